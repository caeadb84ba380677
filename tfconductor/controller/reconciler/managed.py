"""The per-workspace reconcile driver.

One reconcile walks a workspace through::

    shard gate -> connect -> observe -> gone | delete | create | update | idle

Connection details are published after every step that produced outputs,
status is persisted at the end, and no error escapes: failures are logged
once, recorded in the ``Synced`` condition and returned for requeueing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from tfconductor.controller.models.workspace import Condition
from tfconductor.controller.reconciler.result import ReconcileResult
from tfconductor.controller.terraform.errors import TerraformError

if TYPE_CHECKING:
    from tfconductor.controller.clients import ConnectionPublisher, StatusWriter
    from tfconductor.controller.models.workspace import Workspace
    from tfconductor.controller.reconciler.connector import Connector
    from tfconductor.controller.reconciler.gate import ShardGate

DEFAULT_POLL_INTERVAL = 600.0
DEFAULT_ERROR_BACKOFF = 30.0


class ManagedReconciler:
    def __init__(
        self,
        connector: Connector,
        *,
        publisher: ConnectionPublisher,
        status_writer: StatusWriter,
        gate: ShardGate | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        error_backoff: float = DEFAULT_ERROR_BACKOFF,
    ) -> None:
        self._connector = connector
        self._publisher = publisher
        self._status_writer = status_writer
        self._gate = gate
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff

    async def reconcile(self, ws: Workspace, *, deadline: float | None = None) -> ReconcileResult:
        if self._gate is not None and (skipped := self._gate.check(ws.uid)) is not None:
            return skipped

        log = logger.bind(workspace=ws.name, uid=ws.uid)
        try:
            return await self._reconcile(ws, deadline)
        except TerraformError as exc:
            log.info("Reconcile failed: {}", exc)
            return await self._failed(ws, exc)
        except Exception as exc:
            log.exception("Unexpected error during reconcile")
            return await self._failed(ws, exc)

    async def _reconcile(self, ws: Workspace, deadline: float | None) -> ReconcileResult:
        log = logger.bind(workspace=ws.name, uid=ws.uid)
        external = await self._connector.connect(ws, deadline=deadline)
        observation = await external.observe(ws)

        if ws.was_deleted:
            if not observation.resource_exists:
                await self._publisher.unpublish(ws, observation.connection_details)
                ws.status.set_conditions(Condition.deleting(), Condition.reconcile_success())
                await self._status_writer.update_status(ws)
                log.bind(operation="delete").info("Workspace is gone")
                return ReconcileResult(gone=True)

            ws.status.set_conditions(Condition.deleting())
            await external.delete(ws)
            ws.status.set_conditions(Condition.reconcile_success())
            await self._status_writer.update_status(ws)
            log.bind(operation="delete").info("Successfully requested deletion of external resource")
            return ReconcileResult(requeue_after=0.0)

        await self._publisher.publish(ws, observation.connection_details)

        if not observation.resource_exists:
            creation = await external.create(ws)
            # Readiness is derived by the next observe.
            ws.status.set_conditions(Condition.creating(), Condition.reconcile_success())
            await self._publisher.publish(ws, creation.connection_details)
            await self._status_writer.update_status(ws)
            log.bind(operation="create").info("Successfully requested creation of external resource")
            return ReconcileResult(requeue_after=0.0)

        if not observation.resource_up_to_date:
            update = await external.update(ws)
            ws.status.set_conditions(Condition.reconcile_success())
            await self._publisher.publish(ws, update.connection_details)
            await self._status_writer.update_status(ws)
            log.bind(operation="update").info("Successfully requested update of external resource")
            return ReconcileResult(requeue_after=self.poll_interval)

        ws.status.set_conditions(Condition.reconcile_success())
        await self._status_writer.update_status(ws)
        log.bind(operation="observe").debug("External resource is up to date")
        return ReconcileResult(requeue_after=self.poll_interval)

    async def _failed(self, ws: Workspace, exc: Exception) -> ReconcileResult:
        ws.status.set_conditions(Condition.reconcile_error(exc))
        try:
            await self._status_writer.update_status(ws)
        except Exception as write_exc:
            logger.bind(workspace=ws.name, uid=ws.uid).warning("Cannot update status: {}", write_exc)
        return ReconcileResult(requeue_after=self.error_backoff, error=exc)
