"""A harness for running the terraform binary.

Each call runs one terraform subcommand in the harness's working directory
with an explicitly composed environment.  The ambient process environment is
copied, never mutated, so concurrent harnesses cannot leak variables (for
example ``GIT_CRED_DIR``) into each other.

Every invocation is bound to the harness deadline.  When the deadline passes
the child is sent SIGTERM and waited for, so terraform can release its own
lock files, and a ``CancellationError`` is raised instead of partial output.

Exit codes of ``terraform plan -detailed-exitcode``:

- 0: succeeded, no difference
- 1: errored
- 2: succeeded, there is a difference
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Mapping
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger

from tfconductor.controller.terraform.base import NO_DIFF_IN_PLAN, PlanResult
from tfconductor.controller.terraform.checksum import compute_checksum
from tfconductor.controller.terraform.errors import (
    ERR_DEADLINE_EXCEEDED,
    ERR_SIGTERM,
    ERR_WAIT_TERM,
    CancellationError,
    CommandError,
    classify,
    encode_blob,
)
from tfconductor.controller.terraform.lock import CacheLock, NullLock
from tfconductor.controller.terraform.options import InitOptions, Options
from tfconductor.controller.terraform.outputs import Output, parse_outputs

TF_DEFAULT_WORKSPACE = "default"
PLUGIN_CACHE_ENV = "TF_PLUGIN_CACHE_DIR"
CLI_CONFIG_ENV = "TF_CLI_CONFIG_FILE"
CLI_CONFIG_FILE = "./.terraformrc"


class Harness:
    """Runs terraform subcommands in ``dir``.

    Implements the ``TerraformClient`` protocol.

    Parameters
    ----------
    path:
        Terraform binary.
    dir:
        Working directory (the workspace's entrypoint directory).
    use_plugin_cache:
        When false, ``TF_PLUGIN_CACHE_DIR`` is removed from the environment
        and the plugin cache lock is not taken.
    enable_cli_logging:
        Log terraform's output for plan, apply and destroy.
    envs:
        Extra environment variables for every invocation.
    lock:
        Shared plugin-cache lock.  Init takes the write side, everything
        else the read side.
    deadline:
        Absolute ``loop.time()`` after which running commands are terminated.
    base_env:
        Environment to start from.  Defaults to a copy of ``os.environ``.
    """

    def __init__(
        self,
        *,
        path: str,
        dir: str | Path,  # noqa: A002
        use_plugin_cache: bool = True,
        enable_cli_logging: bool = False,
        envs: Mapping[str, str] | None = None,
        lock: CacheLock | None = None,
        deadline: float | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.path = path
        self.dir = Path(dir)
        self.use_plugin_cache = use_plugin_cache
        self.enable_cli_logging = enable_cli_logging
        self.envs = dict(envs or {})
        self.deadline = deadline
        self._lock: CacheLock = lock if lock is not None else NullLock()
        self._base_env = dict(os.environ if base_env is None else base_env)

    # -- Environment and locking -----------------------------------------------

    def environment(self, *, init: bool = False) -> dict[str, str]:
        """The complete environment for one invocation."""
        env = dict(self._base_env)
        if not self.use_plugin_cache:
            env.pop(PLUGIN_CACHE_ENV, None)
        if init:
            env[CLI_CONFIG_ENV] = CLI_CONFIG_FILE
        env.update(self.envs)
        return env

    def _shared(self) -> contextlib.AbstractAsyncContextManager[None]:
        return self._lock.read() if self.use_plugin_cache else contextlib.nullcontext()

    def _exclusive(self) -> contextlib.AbstractAsyncContextManager[None]:
        return self._lock.write() if self.use_plugin_cache else contextlib.nullcontext()

    # -- Process execution -----------------------------------------------------

    def _remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    async def _run(self, *args: str, init: bool = False, check: bool = True) -> tuple[int, bytes, bytes]:
        """Run terraform with ``args``; return ``(returncode, stdout, stderr)``.

        Raises ``CommandError`` on a non-zero exit when ``check`` is set and
        ``CancellationError`` when the deadline passes first.
        """
        argv = [self.path, *args]
        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            raise CancellationError(ERR_DEADLINE_EXCEEDED)

        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=self.dir,
            env=self.environment(init=init),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=remaining)
        except TimeoutError as exc:
            # The reconcile deadline was exceeded.  Terminate and wait rather
            # than abandon the child with its state lock held.
            raise await _terminate(proc, ERR_DEADLINE_EXCEEDED) from exc
        except asyncio.CancelledError:
            # Controller shutdown: same courtesy, then propagate.
            await _terminate(proc, "cancelled")
            raise

        returncode = proc.returncode if proc.returncode is not None else -1
        if check and returncode != 0:
            raise CommandError(argv, returncode, stdout, stderr)
        return returncode, stdout, stderr

    def _log_output(self, operation: str, output: bytes) -> None:
        if self.enable_cli_logging:
            logger.bind(operation=operation).info(output.decode("utf-8", errors="replace"))

    async def _write_var_files(self, opts: Options) -> None:
        for vf in opts.var_files:
            await to_thread.run_sync(partial(_write_private, self.dir / vf.filename, vf.data))

    # -- Commands --------------------------------------------------------------

    async def init(self, opts: InitOptions | None = None) -> None:
        """Initialize a terraform configuration.

        Holds the exclusive side of the plugin cache lock: init may replace
        provider binaries other workspaces are executing.
        """
        opts = opts or InitOptions()
        async with self._exclusive():
            try:
                await self._run("init", "-input=false", "-no-color", *opts.args, init=True)
            except CommandError as exc:
                raise classify(exc) from exc

    async def workspace(self, name: str) -> None:
        """Select the named sub-workspace.  It is created if it does not exist."""
        async with self._shared():
            await self._select_or_create(name)

    async def _select_or_create(self, name: str) -> None:
        with contextlib.suppress(CommandError):
            await self._run("workspace", "select", "-no-color", name)
            return

        # Assume the select failed because the workspace does not exist, which
        # makes terraform exit non-zero.  Optimistic, but creating it cannot hurt.
        try:
            await self._run("workspace", "new", "-no-color", name)
        except CommandError as exc:
            raise classify(exc) from exc

    async def delete_current_workspace(self) -> None:
        """Delete the current sub-workspace unless it is the default one."""
        async with self._shared():
            try:
                _, out, _ = await self._run("workspace", "show", "-no-color")
            except CommandError as exc:
                raise classify(exc) from exc
            name = out.decode("utf-8").rstrip("\n")
            if name == TF_DEFAULT_WORKSPACE:
                return

            await self._select_or_create(TF_DEFAULT_WORKSPACE)
            try:
                await self._run("workspace", "delete", "-no-color", name)
            except CommandError as exc:
                raise classify(exc) from exc

    async def plan(self, opts: Options | None = None) -> PlanResult:
        """Run ``terraform plan`` and report whether desired and actual state differ.

        Terraform's own state lock is disabled: reconciles of one workspace
        never overlap.
        """
        opts = opts or Options()
        await self._write_var_files(opts)

        args = ["plan", "-no-color", "-input=false", "-detailed-exitcode", "-lock=false", *opts.args]
        async with self._shared():
            returncode, stdout, stderr = await self._run(*args, check=False)

        if returncode == 0:
            return PlanResult(differs=False, plan=NO_DIFF_IN_PLAN)
        if returncode == 2:
            self._log_output("plan", stdout)
            return PlanResult(differs=True, plan=encode_blob(stdout.decode("utf-8", errors="replace")))

        self._log_output("plan", stderr)
        err = CommandError([self.path, *args], returncode, stdout, stderr)
        raise classify(err) from err

    async def apply(self, opts: Options | None = None) -> None:
        await self._mutate("apply", opts)

    async def destroy(self, opts: Options | None = None) -> None:
        await self._mutate("destroy", opts)

    async def _mutate(self, operation: str, opts: Options | None) -> None:
        # apply and destroy: 0 succeeded, anything else errored.
        opts = opts or Options()
        await self._write_var_files(opts)

        args = [operation, "-no-color", "-auto-approve", "-input=false", *opts.args]
        async with self._shared():
            returncode, stdout, stderr = await self._run(*args, check=False)

        if returncode == 0:
            self._log_output(operation, stdout)
            return
        self._log_output(operation, stderr)
        err = CommandError([self.path, *args], returncode, stdout, stderr)
        raise classify(err) from err

    async def outputs(self) -> list[Output]:
        """Outputs recorded in the terraform state, sorted by name."""
        async with self._shared():
            try:
                _, stdout, _ = await self._run("output", "-json")
            except CommandError as exc:
                raise classify(exc) from exc
        return parse_outputs(stdout)

    async def resources(self) -> list[str]:
        """Addresses of the resources tracked in the terraform state."""
        async with self._shared():
            try:
                _, out, _ = await self._run("state", "list")
            except CommandError as exc:
                raise classify(exc) from exc
        return [line for line in out.decode("utf-8").splitlines() if line]

    async def checksum(self) -> str:
        """Checksum of the working directory (see ``compute_checksum``)."""
        async with self._shared():
            return await to_thread.run_sync(partial(compute_checksum, self.dir))


# -- Helpers -------------------------------------------------------------------


async def _terminate(proc: asyncio.subprocess.Process, cause: str) -> CancellationError:
    """Send SIGTERM to ``proc`` and wait for it to exit."""
    try:
        proc.terminate()
    except (ProcessLookupError, OSError) as exc:
        return CancellationError(cause, f"{ERR_SIGTERM}: {exc}")
    try:
        # communicate() drains the pipes; a bare wait() can deadlock on a full pipe.
        await proc.communicate()
    except OSError as exc:
        return CancellationError(cause, f"{ERR_WAIT_TERM}: {exc}")
    return CancellationError(cause)


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
