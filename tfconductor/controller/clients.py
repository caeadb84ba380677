"""Collaborator interfaces consumed by the controller core.

The cluster API client, the secret/config-map store and the connection
secret publisher live outside this package.  The core only depends on the
narrow async protocols below, so tests can use in-memory implementations.

All protocols raise ``LookupError`` for a referenced object that does not
exist.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from anyio import Path as AsyncPath

from tfconductor.controller.models.enums import CredentialsSource

if TYPE_CHECKING:
    from tfconductor.controller.models.provider_config import ProviderConfig, ProviderCredentials
    from tfconductor.controller.models.workspace import KeyReference, Workspace


@runtime_checkable
class KeyResolver(Protocol):
    """Resolves a single key of a Secret or ConfigMap.

    Returns ``None`` when the object exists but the key does not.
    """

    async def secret_value(self, ref: KeyReference) -> bytes | None: ...

    async def config_map_value(self, ref: KeyReference) -> str | None: ...


@runtime_checkable
class ProviderConfigGetter(Protocol):
    async def get_provider_config(self, name: str) -> ProviderConfig: ...


@runtime_checkable
class WorkspaceLister(Protocol):
    async def list_workspace_uids(self) -> set[str]:
        """UIDs of every workspace that currently exists."""
        ...


@runtime_checkable
class ConnectionPublisher(Protocol):
    """Publishes every output, sensitive or not, keyed by output name."""

    async def publish(self, workspace: Workspace, details: dict[str, bytes]) -> None: ...

    async def unpublish(self, workspace: Workspace, details: dict[str, bytes]) -> None: ...


@runtime_checkable
class StatusWriter(Protocol):
    async def update_status(self, workspace: Workspace) -> None: ...


@runtime_checkable
class ModuleFetcher(Protocol):
    async def fetch(
        self, source: str, dst: Path, env: Mapping[str, str], *, deadline: float | None = None
    ) -> None:
        """Fetch the module at ``source`` into the existing directory ``dst``."""
        ...


async def extract_credentials(
    creds: ProviderCredentials,
    resolver: KeyResolver,
    environ: Mapping[str, str] | None = None,
) -> bytes:
    """Return the content of a credentials file described by a ProviderConfig.

    Raises ``LookupError`` when the selected secret key or environment
    variable does not exist, ``OSError`` when a file cannot be read.
    """
    environ = os.environ if environ is None else environ
    selectors = creds.selectors

    match creds.source:
        case CredentialsSource.SECRET:
            if selectors.secret_ref is None:
                msg = f"no secret reference for credentials {creds.filename}"
                raise LookupError(msg)
            data = await resolver.secret_value(selectors.secret_ref)
            if data is None:
                ref = selectors.secret_ref
                msg = f"couldn't find key {ref.key} in Secret {ref.namespace}/{ref.name}"
                raise LookupError(msg)
            return data
        case CredentialsSource.ENVIRONMENT:
            if not selectors.env_var or selectors.env_var not in environ:
                msg = f"environment variable {selectors.env_var!r} is not set"
                raise LookupError(msg)
            return environ[selectors.env_var].encode("utf-8")
        case CredentialsSource.FILESYSTEM:
            if not selectors.fs_path:
                msg = f"no filesystem path for credentials {creds.filename}"
                raise LookupError(msg)
            return await AsyncPath(selectors.fs_path).read_bytes()
        case _:
            return b""
