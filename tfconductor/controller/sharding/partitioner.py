"""Deterministic partitioning of resources across controller replicas.

A replica owns a resource when ``fnv1a_32(uid) % replicas == index``.  The
hash is stable across processes and architectures, so replicas agree on
ownership without talking to each other.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum

from tfconductor.controller.sharding.identity import IdentityHolder, ShardIdentity

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def fnv1a_32(data: bytes) -> int:
    h = _FNV32_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def hash_and_modulo(value: str, modulo: int) -> int:
    """Owning shard index of ``value`` among ``modulo`` replicas."""
    if modulo < 1:
        msg = f"modulo must be positive, got {modulo}"
        raise ValueError(msg)
    return fnv1a_32(value.encode("utf-8")) % modulo


class ShardDecision(StrEnum):
    OWNED = "owned"
    NOT_OWNED = "not_owned"
    DEFER = "defer"
    """Identity unknown: retry later rather than drop the ownership decision."""


class ShardPartitioner:
    def __init__(self, identity: IdentityHolder | Callable[[], ShardIdentity]) -> None:
        if isinstance(identity, IdentityHolder):
            holder = identity
            self._identity: Callable[[], ShardIdentity] = lambda: holder.identity
        else:
            self._identity = identity

    @property
    def identity(self) -> ShardIdentity:
        return self._identity()

    def decide(self, uid: str) -> ShardDecision:
        identity = self._identity()
        if not identity.is_known:
            return ShardDecision.DEFER
        if hash_and_modulo(uid, identity.replicas) != identity.index:
            return ShardDecision.NOT_OWNED
        return ShardDecision.OWNED

    def owns(self, uid: str) -> bool:
        return self.decide(uid) == ShardDecision.OWNED
