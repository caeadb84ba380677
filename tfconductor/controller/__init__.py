"""Workspace controller.

- **terraform**: Process harness around the terraform CLI
- **reconciler**: Connect / Observe / Create / Update / Delete state machine
- **workdir**: Per-workspace working directories and their garbage collector
- **sharding**: Replica identity and deterministic work partitioning
"""
