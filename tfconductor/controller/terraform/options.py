"""Argument assembly for terraform subcommands."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Self

from tfconductor.controller.models.enums import FileFormat

VAR_FILE_PREFIX = "tfconductor-"


@dataclass(frozen=True)
class VarFileData:
    filename: str
    data: bytes


@dataclass
class InitOptions:
    """Arguments appended to ``terraform init -input=false -no-color``."""

    args: list[str] = field(default_factory=list)

    def from_module(self, module: str) -> Self:
        """Initialize from a module: a git repository, a local directory, a bucket, ..."""
        self.args.append(f"-from-module={module}")
        return self

    def with_backend_config(self, path: str) -> Self:
        self.args.append(f"-backend-config={path}")
        return self

    def with_args(self, args: list[str]) -> Self:
        self.args.extend(args)
        return self


@dataclass
class Options:
    """Arguments and variable files for plan, apply and destroy.

    Variable files are written into the working directory just before the
    command runs; the ``-var-file`` argument refers to them by name.
    """

    args: list[str] = field(default_factory=list)
    var_files: list[VarFileData] = field(default_factory=list)

    def with_var(self, key: str, value: str) -> Self:
        self.args.append(f"-var={key}={value}")
        return self

    def with_var_file(self, data: bytes, fmt: FileFormat = FileFormat.HCL) -> Self:
        # Terraform uses the file suffix to determine file format.
        filename = f"{VAR_FILE_PREFIX}{len(self.var_files)}.tfvars"
        if fmt == FileFormat.JSON:
            filename += ".json"
        self.args.append(f"-var-file={filename}")
        self.var_files.append(VarFileData(filename=filename, data=data))
        return self

    def with_args(self, args: list[str]) -> Self:
        self.args.extend(args)
        return self
