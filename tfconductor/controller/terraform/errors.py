"""Terraform error taxonomy and the stderr classifier.

Every failure that originates in a terraform subprocess passes through
``classify`` before it is wrapped with operation context.  Classification
keeps error messages short enough for a status condition while still making
the full output recoverable::

    Terraform encountered an error. Summary: <first "Error:" line>.
    To see the full error run: echo "<blob>" | base64 -d | gunzip
"""

from __future__ import annotations

import base64
import gzip
import re
from collections.abc import Sequence

# Terraform often returns a summary of the error it encountered on a single
# line, prefixed with 'Error: '.
_TF_ERROR = re.compile(r"Error: (.+)")

ERR_DEADLINE_EXCEEDED = "context deadline exceeded"
ERR_RUN_COMMAND = "shutdown while running terraform command"
ERR_SIGTERM = "error sending SIGTERM to child process"
ERR_WAIT_TERM = "error waiting for child process to terminate"

_CLASSIFIED_FMT = (
    'Terraform encountered an error. Summary: {summary}. To see the full error run: echo "{blob}" | base64 -d | gunzip'
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TerraformError(Exception):
    """Base class for every error raised by the controller core."""


class CommandError(TerraformError):
    """A terraform subprocess exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stdout: bytes = b"", stderr: bytes = b"") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{' '.join(self.argv[:2])}: exit status {returncode}")


class ClassifiedError(TerraformError):
    """Human summary plus the full output, gzipped and base64 encoded."""

    def __init__(self, summary: str, encoded: str) -> None:
        self.summary = summary
        self.encoded = encoded
        super().__init__(_CLASSIFIED_FMT.format(summary=summary, blob=encoded))


class CancellationError(TerraformError):
    """The reconcile deadline passed (or the controller stopped) while terraform ran.

    The child process has been sent SIGTERM and waited for.  If signalling
    or waiting failed, that secondary failure is part of the message.
    """

    def __init__(self, cause: BaseException | str | None = None, secondary: str | None = None) -> None:
        msg = ERR_RUN_COMMAND
        if cause is not None and str(cause):
            msg = f"{msg}: {cause}"
        if secondary:
            msg = f"{secondary}: {msg}"
        self.secondary = secondary
        super().__init__(msg)


class ParseError(TerraformError):
    """Terraform printed something other than the structured output we asked for."""


class FetchError(TerraformError):
    """A remote module could not be fetched."""


class OperationError(TerraformError):
    """An error wrapped with the context of the operation that failed."""

    context = "terraform operation failed"

    def __init__(self, cause: BaseException | str | None = None, context: str | None = None) -> None:
        if context is not None:
            self.context = context
        self.cause = cause
        msg = self.context if cause is None else f"{self.context}: {cause}"
        super().__init__(msg)


class PreparationError(OperationError):
    context = "cannot prepare Terraform working directory"


class InitError(OperationError):
    context = "cannot initialize Terraform configuration"


class WorkspaceSelectError(OperationError):
    context = "cannot select Terraform workspace"


class ChecksumError(OperationError):
    context = "cannot calculate workspace checksum"


class DiffError(OperationError):
    """``terraform plan`` failed.

    ``tolerated`` is set when the failure happened while deleting a workspace
    that no longer tracks any resources; such failures are logged, not raised.
    """

    context = "cannot diff (i.e. plan) Terraform configuration"

    def __init__(
        self,
        cause: BaseException | str | None = None,
        context: str | None = None,
        *,
        tolerated: bool = False,
    ) -> None:
        self.tolerated = tolerated
        super().__init__(cause, context)


class ApplyError(OperationError):
    context = "cannot apply Terraform configuration"


class DestroyError(OperationError):
    context = "cannot destroy Terraform configuration"


class OutputsError(OperationError):
    context = "cannot list Terraform outputs"


class ResourcesError(OperationError):
    context = "cannot list Terraform resources"


class DeleteWorkspaceError(OperationError):
    context = "cannot delete Terraform workspace"


class OptionsError(OperationError):
    context = "cannot determine Terraform options"


class GCError(TerraformError):
    """One garbage collection cycle failed, possibly only partially."""

    def __init__(self, message: str, failed: Sequence[str] = ()) -> None:
        self.failed = list(failed)
        super().__init__(message)


class ShardError(TerraformError):
    """Shard identity could not be resolved.  Causes deferral, never failure."""


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_blob(text: str) -> str:
    """Gzip ``text`` and base64 encode it (``echo <blob> | base64 -d | gunzip``)."""
    return base64.b64encode(gzip.compress(text.encode("utf-8"))).decode("ascii")


def decode_blob(blob: str) -> str:
    """Reverse ``encode_blob``.  Raises ``ValueError`` on malformed input."""
    try:
        raw = base64.b64decode(blob.strip(), validate=True)
        return gzip.decompress(raw).decode("utf-8")
    except (OSError, EOFError, ValueError) as exc:
        msg = f"not a gzipped, base64 encoded blob: {exc}"
        raise ValueError(msg) from exc


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _normalize(summary: str) -> str:
    summary = summary.strip()
    return summary[:1].lower() + summary[1:]


def summarize(output: str) -> str:
    """Return the first ``Error: X`` line's X, else the first non-empty line."""
    if m := _TF_ERROR.search(output):
        return _normalize(m.group(1))
    for line in output.splitlines():
        if line.strip():
            return _normalize(line)
    return ""


def format_error_output(output: str) -> tuple[str, str]:
    """Return ``(summary, encoded)`` for terraform's error output."""
    return summarize(output), encode_blob(output)


def classify(err: BaseException) -> BaseException:
    """Classify an error raised by a terraform subprocess.

    Errors that did not come from a failed subprocess are returned as-is, as
    is the raw ``CommandError`` when its output cannot be classified.
    """
    if not isinstance(err, CommandError):
        return err
    try:
        output = err.stderr.decode("utf-8", errors="replace")
        summary, encoded = format_error_output(output)
    except (OSError, ValueError):
        return err
    return ClassifiedError(summary or str(err), encoded)
