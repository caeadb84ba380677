"""Workspace reconciliation: connect, observe, create, update, delete."""

from tfconductor.controller.reconciler.result import ExternalObservation, ExternalUpdate, ReconcileResult
from tfconductor.controller.reconciler.external import External, connection_details
from tfconductor.controller.reconciler.connector import Connector
from tfconductor.controller.reconciler.gate import ShardGate
from tfconductor.controller.reconciler.managed import ManagedReconciler
from tfconductor.controller.reconciler.module import TerraformModuleFetcher
from tfconductor.controller.reconciler.runtime import ControllerRuntime

__all__ = [
    "Connector",
    "ControllerRuntime",
    "External",
    "ExternalObservation",
    "ExternalUpdate",
    "ManagedReconciler",
    "ReconcileResult",
    "ShardGate",
    "TerraformModuleFetcher",
    "connection_details",
]
