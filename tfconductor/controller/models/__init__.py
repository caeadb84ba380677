"""Data models for the workspace controller."""

from tfconductor.controller.models.enums import (
    ConditionReason,
    ConditionStatus,
    ConditionType,
    CredentialsSource,
    FileFormat,
    ModuleSource,
    OutputType,
    VarFileSource,
)
from tfconductor.controller.models.provider_config import CredentialSelectors, ProviderConfig, ProviderCredentials
from tfconductor.controller.models.workspace import (
    Condition,
    EnvVar,
    KeyReference,
    Var,
    VarFile,
    Workspace,
    WorkspaceObservation,
    WorkspaceParameters,
    WorkspaceStatus,
)

__all__ = [
    "Condition",
    "ConditionReason",
    "ConditionStatus",
    "ConditionType",
    "CredentialSelectors",
    "CredentialsSource",
    "EnvVar",
    "FileFormat",
    "KeyReference",
    "ModuleSource",
    "OutputType",
    "ProviderConfig",
    "ProviderCredentials",
    "Var",
    "VarFile",
    "VarFileSource",
    "Workspace",
    "WorkspaceObservation",
    "WorkspaceParameters",
    "WorkspaceStatus",
]
