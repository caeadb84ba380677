"""tfconductor - converges declared Terraform workspaces toward desired state."""
