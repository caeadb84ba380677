"""Workspace data model.

A workspace is the declarative unit the controller manages: one terraform
root module, one working directory and one terraform sub-workspace per
instance.  ``spec`` holds the desired state; ``status`` is written only by
the reconciler.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from tfconductor.controller.models.enums import (
    ConditionReason,
    ConditionStatus,
    ConditionType,
    FileFormat,
    ModuleSource,
    VarFileSource,
)

# -- References --------------------------------------------------------------


class KeyReference(BaseModel):
    """A key within a Secret or a ConfigMap."""

    namespace: str
    name: str
    key: str


# -- Parameters --------------------------------------------------------------


class Var(BaseModel):
    key: str
    value: str


class VarFile(BaseModel):
    """A file holding many terraform variables, pulled from a Secret or ConfigMap."""

    source: VarFileSource
    format: FileFormat = FileFormat.HCL
    config_map_key_ref: KeyReference | None = None
    secret_key_ref: KeyReference | None = None


class EnvVar(BaseModel):
    """An environment variable for every terraform invocation.

    ``value`` wins when set; otherwise the ConfigMap reference, then the
    Secret reference, is resolved.
    """

    name: str
    value: str = ""
    config_map_key_ref: KeyReference | None = None
    secret_key_ref: KeyReference | None = None


class WorkspaceParameters(BaseModel):
    """Configurable fields of a workspace."""

    module: str
    """Inline main.tf content, or a git, http(s) archive or local module address."""

    source: ModuleSource = ModuleSource.REMOTE
    inline_format: FileFormat = FileFormat.HCL
    entrypoint: str = ""
    """Subdirectory of the module in which terraform runs."""

    include_plan: bool = False
    """Record the (gzipped, base64 encoded) plan in the status."""

    env: list[EnvVar] = Field(default_factory=list)
    vars: list[Var] = Field(default_factory=list)
    var_map: dict[str, Any] | None = None
    var_files: list[VarFile] = Field(default_factory=list)

    init_args: list[str] = Field(default_factory=list)
    plan_args: list[str] = Field(default_factory=list)
    apply_args: list[str] = Field(default_factory=list)
    destroy_args: list[str] = Field(default_factory=list)

    enable_cli_logging: bool = False
    """Log terraform's own output for plan, apply and destroy."""


# -- Status ------------------------------------------------------------------


class Condition(BaseModel):
    type: ConditionType
    status: ConditionStatus
    reason: ConditionReason
    message: str | None = None
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def available(cls) -> Condition:
        return cls(type=ConditionType.READY, status=ConditionStatus.TRUE, reason=ConditionReason.AVAILABLE)

    @classmethod
    def creating(cls) -> Condition:
        return cls(type=ConditionType.READY, status=ConditionStatus.FALSE, reason=ConditionReason.CREATING)

    @classmethod
    def deleting(cls) -> Condition:
        return cls(type=ConditionType.READY, status=ConditionStatus.FALSE, reason=ConditionReason.DELETING)

    @classmethod
    def reconcile_success(cls) -> Condition:
        return cls(type=ConditionType.SYNCED, status=ConditionStatus.TRUE, reason=ConditionReason.RECONCILE_SUCCESS)

    @classmethod
    def reconcile_error(cls, err: BaseException) -> Condition:
        return cls(
            type=ConditionType.SYNCED,
            status=ConditionStatus.FALSE,
            reason=ConditionReason.RECONCILE_ERROR,
            message=str(err),
        )


class WorkspaceObservation(BaseModel):
    """Observable fields of a workspace."""

    plan_stamp: str | None = None
    plan: str | None = None
    checksum: str = ""
    outputs: dict[str, Any] = Field(default_factory=dict)


class WorkspaceStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)
    at_provider: WorkspaceObservation = Field(default_factory=WorkspaceObservation)

    def get_condition(self, ctype: ConditionType) -> Condition | None:
        for c in self.conditions:
            if c.type == ctype:
                return c
        return None

    def set_conditions(self, *conditions: Condition) -> None:
        """Set conditions, replacing any existing condition of the same type.

        The transition time is preserved when status and reason are unchanged.
        """
        for new in conditions:
            existing = self.get_condition(new.type)
            if existing is None:
                self.conditions.append(new)
                continue
            if existing.status == new.status and existing.reason == new.reason and existing.message == new.message:
                continue
            self.conditions[self.conditions.index(existing)] = new


# -- Workspace ---------------------------------------------------------------


class Workspace(BaseModel):
    """A workspace of terraform configuration."""

    name: str
    uid: str
    namespace: str | None = None
    external_name: str | None = None
    """Name of the terraform sub-workspace.  Defaults to ``name``."""

    provider_config_ref: str = "default"
    deletion_timestamp: datetime | None = None
    """Tombstone: set when the workspace has been deleted by its owner."""

    spec: WorkspaceParameters
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)

    @property
    def was_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def get_external_name(self) -> str:
        return self.external_name or self.name
