"""Shared enumerations used across the controller."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class ModuleSource(StrEnum):
    REMOTE = "Remote"
    INLINE = "Inline"


class FileFormat(StrEnum):
    """Format of an inline module or a variables file."""

    HCL = "HCL"
    JSON = "JSON"


class VarFileSource(StrEnum):
    CONFIG_MAP_KEY = "ConfigMapKey"
    SECRET_KEY = "SecretKey"


# -- ProviderConfig ----------------------------------------------------------


class CredentialsSource(StrEnum):
    """Where a credentials file's content comes from."""

    NONE = "None"
    SECRET = "Secret"
    ENVIRONMENT = "Environment"
    FILESYSTEM = "Filesystem"


# -- Status ------------------------------------------------------------------


class ConditionType(StrEnum):
    READY = "Ready"
    SYNCED = "Synced"


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(StrEnum):
    AVAILABLE = "Available"
    CREATING = "Creating"
    DELETING = "Deleting"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"


# -- Terraform ---------------------------------------------------------------


class OutputType(StrEnum):
    """Declared type of a terraform output."""

    UNKNOWN = "unknown"
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    TUPLE = "tuple"
    OBJECT = "object"

    @classmethod
    def parse(cls, value: str) -> OutputType:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN
