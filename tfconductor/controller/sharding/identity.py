"""Shard identity of this controller replica.

A replica's identity is ``(index, replicas)``: ``replicas`` is the declared
size of the replica set that owns this pod, ``index`` is this pod's rank
when the set's pods are sorted by name.  Both change as replicas come and
go, so the identity is an owned value that is refreshed periodically and
whenever the membership source signals a change.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from loguru import logger

from tfconductor.controller.terraform.errors import ShardError

DEFAULT_REFRESH_INTERVAL = 30.0


@dataclass(frozen=True)
class ShardIdentity:
    index: int = -1
    replicas: int = -1

    @property
    def is_known(self) -> bool:
        return self.index >= 0 and self.replicas >= 1


UNKNOWN_IDENTITY = ShardIdentity()


@dataclass(frozen=True)
class PodInfo:
    name: str
    owners: tuple[str, ...] = ()
    """Names of the pod's owner references."""


@dataclass(frozen=True)
class Membership:
    """A snapshot of the replica set owning this pod, and its pods."""

    replica_set: str
    replicas: int | None
    pods: list[PodInfo] = field(default_factory=list)


@runtime_checkable
class MembershipSource(Protocol):
    async def snapshot(self, pod_name: str) -> Membership:
        """Membership of the replica set owning ``pod_name``.

        Raises ``LookupError`` when the pod or its replica set cannot be found;
        any other exception (an API or connection failure) is treated the same.
        """
        ...


def compute_identity(pod_name: str, membership: Membership) -> ShardIdentity:
    siblings = sorted(p.name for p in membership.pods if membership.replica_set in p.owners)
    index = siblings.index(pod_name) if pod_name in siblings else -1
    replicas = membership.replicas if membership.replicas is not None else -1
    return ShardIdentity(index=index, replicas=replicas)


class IdentityHolder:
    """Holds this replica's current ``ShardIdentity`` and keeps it fresh.

    ``notify()`` is meant to be wired to a membership watch so a change is
    picked up before the next periodic refresh.
    """

    def __init__(
        self,
        source: MembershipSource,
        pod_name: str | None,
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        self._source = source
        self._pod_name = pod_name
        self.refresh_interval = refresh_interval
        self._identity = UNKNOWN_IDENTITY
        self._wake = asyncio.Event()

    @property
    def identity(self) -> ShardIdentity:
        return self._identity

    def notify(self) -> None:
        self._wake.set()

    async def refresh(self) -> ShardIdentity:
        """Recompute the identity.  Raises ``ShardError`` (identity becomes unknown)."""
        if not self._pod_name:
            self._identity = UNKNOWN_IDENTITY
            msg = "POD_NAMESPACE or POD_NAME environment variable is not set"
            raise ShardError(msg)
        try:
            membership = await self._source.snapshot(self._pod_name)
        except Exception as exc:
            self._identity = UNKNOWN_IDENTITY
            msg = f"cannot resolve shard membership: {exc}"
            raise ShardError(msg) from exc

        previous, self._identity = self._identity, compute_identity(self._pod_name, membership)
        if self._identity != previous:
            logger.bind(operation="identity").debug(
                "Shard identity updated (index={}, replicas={})", self._identity.index, self._identity.replicas
            )
        return self._identity

    async def run(self) -> None:
        """Refresh on every notification or interval until cancelled."""
        while True:
            try:
                await self.refresh()
            except ShardError as exc:
                logger.bind(operation="identity").warning("Shard identity unavailable, retrying: {}", exc)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.refresh_interval)
            self._wake.clear()
