"""ProviderConfig data model.

Shared, read-only configuration referenced by one or more workspaces:
credential files, an injected provider configuration snippet, an optional
backend file and the plugin-cache toggle.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from tfconductor.controller.models.enums import CredentialsSource
from tfconductor.controller.models.workspace import KeyReference


class CredentialSelectors(BaseModel):
    secret_ref: KeyReference | None = None
    env_var: str | None = None
    fs_path: str | None = None


class ProviderCredentials(BaseModel):
    """A credentials file materialised into every workspace's work dir."""

    filename: str
    source: CredentialsSource = CredentialsSource.NONE
    selectors: CredentialSelectors = Field(default_factory=CredentialSelectors)


class ProviderConfig(BaseModel):
    name: str
    uid: str
    credentials: list[ProviderCredentials] = Field(default_factory=list)
    configuration: str | None = None
    """Terraform configuration written as an extra ``.tf`` file, e.g. a provider block."""

    backend_file: str | None = None
    """Backend configuration passed to ``terraform init -backend-config``."""

    plugin_cache: bool | None = None
    """Share downloaded provider plugins across workspaces.  Unset means enabled."""

    @property
    def uses_plugin_cache(self) -> bool:
        return True if self.plugin_cache is None else self.plugin_cache
