"""Connect: prepare a workspace's working directory and terraform client.

On every reconcile the working directory is brought up to date with the
desired state:

1. Resolve the referenced ProviderConfig.
2. Stage git credentials (outside the work dir, see ``WorkDirPaths``).
3. Render the module: write inline content, or fetch the remote module.
4. Materialise credential files, the provider configuration snippet and
   the backend file into the entrypoint directory.
5. Run ``terraform init`` -- unless the checksum recorded by the previous
   observe matches the directory's content.  Init is the most expensive
   step and the only one contending for the plugin cache write lock.
6. Select the terraform sub-workspace named after the external name.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from anyio import to_thread
from loguru import logger

from tfconductor.controller.clients import extract_credentials
from tfconductor.controller.models.enums import FileFormat, ModuleSource
from tfconductor.controller.reconciler.external import External
from tfconductor.controller.terraform.errors import (
    ChecksumError,
    InitError,
    PreparationError,
    TerraformError,
    WorkspaceSelectError,
)
from tfconductor.controller.terraform.options import InitOptions

if TYPE_CHECKING:
    from tfconductor.controller.clients import KeyResolver, ModuleFetcher, ProviderConfigGetter
    from tfconductor.controller.models.provider_config import ProviderConfig
    from tfconductor.controller.models.workspace import EnvVar, Workspace
    from tfconductor.controller.terraform.base import TerraformClient
    from tfconductor.controller.workdir.paths import WorkDirPaths

TF_MAIN = "main.tf"
TF_MAIN_JSON = "main.tf.json"
TF_CONFIG = "tfconductor-provider-config.tf"
TF_BACKEND_FILE = "tfconductor.remote.tfbackend"
GIT_CREDENTIALS_FILENAME = ".git-credentials"
GIT_CRED_DIR_ENV = "GIT_CRED_DIR"

ERR_MKDIR = "cannot make Terraform configuration directory"
ERR_GET_PC = "cannot get ProviderConfig"
ERR_GET_CREDS = "cannot get credentials"
ERR_WRITE_CREDS = "cannot write Terraform credentials"
ERR_WRITE_GIT_CREDS = "cannot write .git-credentials to tmp dir"
ERR_REMOTE_MODULE = "cannot get remote Terraform module"
ERR_WRITE_MAIN = "cannot write Terraform configuration"
ERR_VAR_RESOLUTION = "cannot resolve variables"


class TerraformFactory(Protocol):
    def __call__(
        self,
        *,
        dir: Path,  # noqa: A002
        use_plugin_cache: bool,
        enable_cli_logging: bool,
        envs: Mapping[str, str],
        deadline: float | None,
    ) -> TerraformClient: ...


class Connector:
    """Produces a connected ``External`` client for a workspace."""

    def __init__(
        self,
        *,
        provider_configs: ProviderConfigGetter,
        resolver: KeyResolver,
        paths: WorkDirPaths,
        terraform: TerraformFactory,
        fetcher: ModuleFetcher,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._provider_configs = provider_configs
        self._resolver = resolver
        self._paths = paths
        self._terraform = terraform
        self._fetcher = fetcher
        self._environ = environ

    async def connect(self, ws: Workspace, *, deadline: float | None = None) -> External:
        log = logger.bind(workspace=ws.name, uid=ws.uid, operation="connect")
        workdir = self._paths.workdir(ws.uid)
        try:
            await to_thread.run_sync(partial(_mkdir, workdir))
            await to_thread.run_sync(partial(_mkdir, self._paths.tmp_root))
        except OSError as exc:
            raise PreparationError(exc, ERR_MKDIR) from exc

        try:
            pc = await self._provider_configs.get_provider_config(ws.provider_config_ref)
        except LookupError as exc:
            raise PreparationError(exc, ERR_GET_PC) from exc

        envs: dict[str, str] = {}
        git_cred_dir = await self._stage_git_credentials(ws, pc)
        if git_cred_dir is not None:
            envs[GIT_CRED_DIR_ENV] = str(git_cred_dir)
        envs.update(await self._resolve_env(ws.spec.env))

        await self._render_module(ws, workdir, envs, deadline)

        tfdir = self._paths.entrypoint_dir(ws.uid, ws.spec.entrypoint)
        await self._write_provider_files(pc, tfdir)

        tf = self._terraform(
            dir=tfdir,
            use_plugin_cache=pc.uses_plugin_cache,
            enable_cli_logging=ws.spec.enable_cli_logging,
            envs=envs,
            deadline=deadline,
        )

        if await self._checksum_matches(ws, tf, log):
            log.debug("Checksums match - skip running terraform init")
        else:
            opts = InitOptions()
            if pc.backend_file is not None:
                opts.with_backend_config(str((tfdir / TF_BACKEND_FILE).absolute()))
            opts.with_args(ws.spec.init_args)
            try:
                await tf.init(opts)
            except TerraformError as exc:
                raise InitError(exc) from exc

        try:
            await tf.workspace(ws.get_external_name())
        except TerraformError as exc:
            raise WorkspaceSelectError(exc) from exc

        return External(tf, self._resolver)

    # -- Steps -----------------------------------------------------------------

    async def _checksum_matches(self, ws: Workspace, tf: TerraformClient, log) -> bool:  # noqa: ANN001
        recorded = ws.status.at_provider.checksum
        if not recorded:
            return False
        try:
            current = await tf.checksum()
        except OSError as exc:
            raise ChecksumError(exc) from exc
        if current != recorded:
            log.debug("Checksums don't match so run terraform init (old={}, new={})", recorded, current)
            return False
        return True

    async def _stage_git_credentials(self, ws: Workspace, pc: ProviderConfig) -> Path | None:
        """Write ``.git-credentials`` where git (via ``GIT_CRED_DIR``) can find them."""
        staged: Path | None = None
        for creds in pc.credentials:
            if creds.filename != GIT_CREDENTIALS_FILENAME:
                continue
            data = await self._extract(creds)
            git_cred_dir = self._paths.git_cred_dir(ws.uid)
            try:
                await to_thread.run_sync(
                    partial(_write_private, git_cred_dir / Path(creds.filename).name, data, mkdir=True)
                )
            except OSError as exc:
                raise PreparationError(exc, ERR_WRITE_GIT_CREDS) from exc
            staged = git_cred_dir
        return staged

    async def _render_module(
        self, ws: Workspace, workdir: Path, envs: Mapping[str, str], deadline: float | None
    ) -> None:
        params = ws.spec
        if params.source == ModuleSource.REMOTE:
            try:
                await self._fetcher.fetch(params.module, workdir, envs, deadline=deadline)
            except (TerraformError, OSError) as exc:
                raise PreparationError(exc, ERR_REMOTE_MODULE) from exc
            return

        filename = TF_MAIN_JSON if params.inline_format == FileFormat.JSON else TF_MAIN
        try:
            await to_thread.run_sync(partial(_write_private, workdir / filename, params.module.encode("utf-8")))
        except OSError as exc:
            raise PreparationError(exc, f"{ERR_WRITE_MAIN} {filename}") from exc

    async def _write_provider_files(self, pc: ProviderConfig, tfdir: Path) -> None:
        files: list[tuple[str, bytes, str]] = []
        for creds in pc.credentials:
            files.append((Path(creds.filename).name, await self._extract(creds), ERR_WRITE_CREDS))
        if pc.configuration is not None:
            files.append((TF_CONFIG, pc.configuration.encode("utf-8"), f"{ERR_WRITE_MAIN} {TF_CONFIG}"))
        if pc.backend_file is not None:
            files.append((TF_BACKEND_FILE, pc.backend_file.encode("utf-8"), f"{ERR_WRITE_MAIN} {TF_BACKEND_FILE}"))

        for name, data, context in files:
            try:
                await to_thread.run_sync(partial(_write_private, tfdir / name, data, mkdir=True))
            except OSError as exc:
                raise PreparationError(exc, context) from exc

    async def _extract(self, creds) -> bytes:  # noqa: ANN001
        try:
            return await extract_credentials(creds, self._resolver, self._environ)
        except (LookupError, OSError) as exc:
            raise PreparationError(exc, ERR_GET_CREDS) from exc

    async def _resolve_env(self, env: list[EnvVar]) -> dict[str, str]:
        """Resolve environment variables: literal value, ConfigMap key, then Secret key."""
        resolved: dict[str, str] = {}
        for var in env:
            try:
                resolved[var.name] = await self._env_value(var)
            except LookupError as exc:
                raise PreparationError(exc, ERR_VAR_RESOLUTION) from exc
        return resolved

    async def _env_value(self, var: EnvVar) -> str:
        if var.value:
            return var.value
        if (ref := var.config_map_key_ref) is not None:
            value = await self._resolver.config_map_value(ref)
            if value is None:
                msg = f"couldn't find key {ref.key} in ConfigMap {ref.namespace}/{ref.name}"
                raise LookupError(msg)
            return value
        if (ref := var.secret_key_ref) is not None:
            data = await self._resolver.secret_value(ref)
            if data is None:
                msg = f"couldn't find key {ref.key} in Secret {ref.namespace}/{ref.name}"
                raise LookupError(msg)
            return data.decode("utf-8")
        return ""


# -- Sync helpers (run in thread pool) -----------------------------------------


def _mkdir(path: Path) -> None:
    path.mkdir(mode=0o700, parents=True, exist_ok=True)


def _write_private(path: Path, data: bytes, *, mkdir: bool = False) -> None:
    if mkdir:
        _mkdir(path.parent)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
