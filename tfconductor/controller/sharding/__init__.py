"""Replica identity and deterministic work sharding."""

from tfconductor.controller.sharding.identity import (
    UNKNOWN_IDENTITY,
    IdentityHolder,
    Membership,
    MembershipSource,
    PodInfo,
    ShardIdentity,
    compute_identity,
)
from tfconductor.controller.sharding.partitioner import ShardDecision, ShardPartitioner, fnv1a_32, hash_and_modulo

__all__ = [
    "UNKNOWN_IDENTITY",
    "IdentityHolder",
    "Membership",
    "MembershipSource",
    "PodInfo",
    "ShardDecision",
    "ShardIdentity",
    "ShardPartitioner",
    "compute_identity",
    "fnv1a_32",
    "hash_and_modulo",
]
