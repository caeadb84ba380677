"""Ownership gate applied before any reconcile."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from tfconductor.controller.reconciler.result import ReconcileResult
from tfconductor.controller.sharding.partitioner import ShardDecision

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tfconductor.controller.sharding.partitioner import ShardPartitioner

DEFAULT_DEFER_SECONDS = 30.0


class ShardGate:
    """Lets a reconcile through only when this replica owns the object.

    Without a partitioner (sharding disabled) everything is owned.
    """

    def __init__(self, partitioner: ShardPartitioner | None, *, defer_seconds: float = DEFAULT_DEFER_SECONDS) -> None:
        self.partitioner = partitioner
        self.defer_seconds = defer_seconds

    def check(self, uid: str, *, kind: str = "workspace") -> ReconcileResult | None:
        """Return ``None`` to proceed, or the result to report instead of reconciling."""
        if self.partitioner is None:
            return None

        identity = self.partitioner.identity
        log = logger.bind(operation="shard", kind=kind, uid=uid, index=identity.index, replicas=identity.replicas)
        match self.partitioner.decide(uid):
            case ShardDecision.DEFER:
                log.debug("Skipping {} reconciliation: invalid index or replicas", kind)
                return ReconcileResult(requeue_after=self.defer_seconds)
            case ShardDecision.NOT_OWNED:
                log.debug("Skipping {} reconciliation: not managed by this reconciler", kind)
                return ReconcileResult()
            case _:
                log.debug("Processing {} reconciliation: managed by this reconciler", kind)
                return None

    async def run(
        self,
        uid: str,
        reconcile: Callable[[], Awaitable[ReconcileResult]],
        *,
        kind: str = "workspace",
    ) -> ReconcileResult:
        if (skipped := self.check(uid, kind=kind)) is not None:
            return skipped
        return await reconcile()
