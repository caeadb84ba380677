"""Observe, create, update and delete a workspace through a connected client."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from loguru import logger

from tfconductor.controller.models.enums import FileFormat, OutputType, VarFileSource
from tfconductor.controller.models.workspace import Condition, WorkspaceObservation
from tfconductor.controller.reconciler.result import ExternalObservation, ExternalUpdate
from tfconductor.controller.terraform.base import PlanResult
from tfconductor.controller.terraform.errors import (
    ApplyError,
    CancellationError,
    ChecksumError,
    DeleteWorkspaceError,
    DestroyError,
    DiffError,
    OptionsError,
    OutputsError,
    ResourcesError,
    TerraformError,
)
from tfconductor.controller.terraform.options import Options

if TYPE_CHECKING:
    from tfconductor.controller.clients import KeyResolver
    from tfconductor.controller.models.workspace import VarFile, Workspace, WorkspaceParameters
    from tfconductor.controller.terraform.base import TerraformClient
    from tfconductor.controller.terraform.outputs import Output

PLAN_STAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

ERR_VAR_FILE = "cannot get tfvars"
ERR_VAR_MAP = "cannot get tfvars from var map"


class External:
    """A workspace's connected terraform client.

    Terraform has no distinct create: ``create`` and ``update`` both apply.
    """

    def __init__(self, tf: TerraformClient, resolver: KeyResolver) -> None:
        self.tf = tf
        self._resolver = resolver

    async def observe(self, ws: Workspace) -> ExternalObservation:
        log = logger.bind(workspace=ws.name, uid=ws.uid, operation="observe")
        params = ws.spec
        opts = (await self.options(params)).with_args(params.plan_args)

        try:
            result = await self.tf.plan(opts)
        except CancellationError:
            raise
        except TerraformError as exc:
            result = await self._plan_failed(ws, exc, log)

        resources = await self._resources()
        if ws.was_deleted and not resources:
            # Nothing left to destroy; the sub-workspace can go too.
            try:
                await self.tf.delete_current_workspace()
            except TerraformError as exc:
                raise DeleteWorkspaceError(exc) from exc

        outputs = await self._outputs()
        checksum = await self._checksum()
        ws.status.at_provider = _observation(outputs, checksum)

        if params.include_plan:
            ws.status.at_provider.plan = result.plan
            ws.status.at_provider.plan_stamp = datetime.now(UTC).strftime(PLAN_STAMP_FORMAT)

        if not result.differs:
            ws.status.set_conditions(Condition.available())

        log.debug("Observed (resources={}, outputs={}, differs={})", len(resources), len(outputs), result.differs)
        return ExternalObservation(
            resource_exists=len(resources) + len(outputs) > 0,
            resource_up_to_date=not result.differs,
            connection_details=connection_details(outputs),
        )

    async def _plan_failed(self, ws: Workspace, exc: TerraformError, log) -> PlanResult:  # noqa: ANN001
        """Decide whether a failed plan may be ignored.

        Plan can fail for a deleted workspace.  The failure is tolerated only
        when no tracked resources remain; otherwise it is surfaced so a later
        reconcile retries destroy.  The checksum is recorded either way.
        """
        if ws.was_deleted and not await self._resources():
            log.info("{}", DiffError(exc, tolerated=True))
            return PlanResult(differs=False, plan="")

        try:
            ws.status.at_provider.checksum = await self._checksum()
        except ChecksumError as checksum_exc:
            log.debug("Cannot record checksum after failed plan: {}", checksum_exc)
        raise DiffError(exc) from exc

    async def create(self, ws: Workspace) -> ExternalUpdate:
        return await self.update(ws)

    async def update(self, ws: Workspace) -> ExternalUpdate:
        params = ws.spec
        opts = (await self.options(params)).with_args(params.apply_args)
        try:
            await self.tf.apply(opts)
        except TerraformError as exc:
            raise ApplyError(exc) from exc

        outputs = await self._outputs()
        ws.status.at_provider = _observation(outputs, ws.status.at_provider.checksum)
        ws.status.set_conditions(Condition.available())
        return ExternalUpdate(connection_details=connection_details(outputs))

    async def delete(self, ws: Workspace) -> None:
        params = ws.spec
        opts = (await self.options(params)).with_args(params.destroy_args)
        try:
            await self.tf.destroy(opts)
        except TerraformError as exc:
            raise DestroyError(exc) from exc

    # -- Option assembly -------------------------------------------------------

    async def options(self, params: WorkspaceParameters) -> Options:
        """Variables, variable files and the variable map, in that order."""
        opts = Options()
        for v in params.vars:
            opts.with_var(v.key, v.value)

        for vf in params.var_files:
            try:
                data = await self._var_file_content(vf)
            except LookupError as exc:
                raise OptionsError(f"{ERR_VAR_FILE}: {exc}") from exc
            opts.with_var_file(data, vf.format)

        if params.var_map is not None:
            try:
                data = json.dumps(params.var_map).encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise OptionsError(f"{ERR_VAR_MAP}: {exc}") from exc
            opts.with_var_file(data, FileFormat.JSON)
        return opts

    async def _var_file_content(self, vf: VarFile) -> bytes:
        # A missing key yields an empty file; a missing object is an error.
        match vf.source:
            case VarFileSource.CONFIG_MAP_KEY if vf.config_map_key_ref is not None:
                value = await self._resolver.config_map_value(vf.config_map_key_ref)
                return (value or "").encode("utf-8")
            case VarFileSource.SECRET_KEY if vf.secret_key_ref is not None:
                return await self._resolver.secret_value(vf.secret_key_ref) or b""
            case _:
                msg = f"no {vf.source} reference for var file"
                raise LookupError(msg)

    # -- Wrapped client calls --------------------------------------------------

    async def _resources(self) -> list[str]:
        try:
            return await self.tf.resources()
        except TerraformError as exc:
            raise ResourcesError(exc) from exc

    async def _outputs(self) -> list[Output]:
        try:
            return await self.tf.outputs()
        except TerraformError as exc:
            raise OutputsError(exc) from exc

    async def _checksum(self) -> str:
        try:
            return await self.tf.checksum()
        except (OSError, TerraformError) as exc:
            raise ChecksumError(exc) from exc


def connection_details(outputs: list[Output]) -> dict[str, bytes]:
    """Every output, sensitive or not: raw text for strings, JSON otherwise."""
    details: dict[str, bytes] = {}
    for o in outputs:
        if o.type == OutputType.STRING:
            details[o.name] = o.string_value().encode("utf-8")
        else:
            details[o.name] = o.json_value()
    return details


def _observation(outputs: list[Output], checksum: str) -> WorkspaceObservation:
    # Only non-sensitive outputs are mirrored into status.
    return WorkspaceObservation(
        checksum=checksum,
        outputs={o.name: o.value for o in outputs if not o.sensitive},
    )
