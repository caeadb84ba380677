"""Results exchanged between the reconciler stages."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ExternalObservation:
    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: dict[str, bytes] = field(default_factory=dict)


@dataclass
class ExternalUpdate:
    connection_details: dict[str, bytes] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    """Outcome of one reconcile, for the surrounding work queue.

    ``requeue_after`` is ``None`` when the resource need not be revisited
    (not owned by this shard, or gone).  Errors are always retryable.
    """

    requeue_after: float | None = None
    error: BaseException | None = None
    gone: bool = False

    @property
    def success(self) -> bool:
        return self.error is None
