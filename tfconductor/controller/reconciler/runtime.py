"""Controller runtime: shared state, bounded concurrency and background tasks.

The runtime owns everything that is process-wide:

- the plugin cache lock, constructed once and injected into every harness
- the semaphore bounding concurrent reconciles
- the garbage collectors for the work dir root and the git credential root
- the shard identity refresher, when sharding is enabled

The surrounding work queue calls ``reconcile`` for one workspace at a time
per workspace; different workspaces may be reconciled concurrently up to
``max_reconcile_rate``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Self

from anyio import to_thread
from loguru import logger

from tfconductor.controller.reconciler.connector import Connector
from tfconductor.controller.reconciler.gate import ShardGate
from tfconductor.controller.reconciler.managed import ManagedReconciler
from tfconductor.controller.reconciler.module import TerraformModuleFetcher
from tfconductor.controller.sharding.identity import IdentityHolder
from tfconductor.controller.sharding.partitioner import ShardPartitioner
from tfconductor.controller.terraform.harness import Harness
from tfconductor.controller.terraform.lock import PluginCacheLock
from tfconductor.controller.workdir.gc import GarbageCollector
from tfconductor.controller.workdir.paths import WorkDirPaths

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from tfconductor.controller.clients import (
        ConnectionPublisher,
        KeyResolver,
        ModuleFetcher,
        ProviderConfigGetter,
        StatusWriter,
        WorkspaceLister,
    )
    from tfconductor.controller.models.provider_config import ProviderConfig
    from tfconductor.controller.models.workspace import Workspace
    from tfconductor.controller.reconciler.result import ReconcileResult
    from tfconductor.controller.settings import TFCSettings
    from tfconductor.controller.sharding.identity import MembershipSource
    from tfconductor.controller.terraform.lock import CacheLock


class ControllerRuntime:
    def __init__(
        self,
        settings: TFCSettings,
        *,
        provider_configs: ProviderConfigGetter,
        resolver: KeyResolver,
        lister: WorkspaceLister,
        publisher: ConnectionPublisher,
        status_writer: StatusWriter,
        membership: MembershipSource | None = None,
        fetcher: ModuleFetcher | None = None,
        lock: CacheLock | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.lock: CacheLock = lock if lock is not None else PluginCacheLock()
        self.paths = WorkDirPaths(settings.tf_dir, settings.tmp_root)
        self._environ = environ
        self._semaphore = asyncio.Semaphore(max(1, settings.max_reconcile_rate))
        self._tasks: set[asyncio.Task[None]] = set()

        self.identity: IdentityHolder | None = None
        partitioner: ShardPartitioner | None = None
        if settings.enable_sharding:
            if membership is None:
                msg = "sharding is enabled but no membership source was given"
                raise ValueError(msg)
            self.identity = IdentityHolder(
                membership, settings.pod_name, refresh_interval=settings.identity_refresh_interval
            )
            partitioner = ShardPartitioner(self.identity)
        self.gate = ShardGate(partitioner, defer_seconds=settings.shard_defer_seconds)

        connector = Connector(
            provider_configs=provider_configs,
            resolver=resolver,
            paths=self.paths,
            terraform=self._terraform,
            fetcher=fetcher if fetcher is not None else TerraformModuleFetcher(environ=environ),
            environ=environ,
        )
        self.reconciler = ManagedReconciler(
            connector,
            publisher=publisher,
            status_writer=status_writer,
            gate=self.gate,
            poll_interval=settings.poll_interval,
        )
        self.collectors = [
            GarbageCollector(lister, self.paths.root, interval=settings.gc_interval),
            GarbageCollector(lister, self.paths.tmp_root, interval=settings.gc_interval),
        ]

    def _terraform(self, **kwargs: Any) -> Harness:
        return Harness(path=self.settings.tf_path, lock=self.lock, base_env=self._environ, **kwargs)

    # -- Lifecycle -------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        await to_thread.run_sync(self.paths.ensure_roots)

        for collector in self.collectors:
            self._spawn(collector.run(), f"gc:{collector.parent_dir}")
        if self.identity is not None:
            self._spawn(self.identity.run(), "identity")

        logger.info(
            "Controller started (tf_dir={}, max_reconcile_rate={}, sharding={})",
            self.paths.root,
            self.settings.max_reconcile_rate,
            self.identity is not None,
        )

    async def stop(self) -> None:
        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Controller stopped")

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # -- Reconciles ------------------------------------------------------------

    async def reconcile(self, ws: Workspace) -> ReconcileResult:
        """Reconcile one workspace within the configured timeout."""
        async with self._semaphore:
            deadline = asyncio.get_running_loop().time() + self.settings.timeout
            return await self.reconciler.reconcile(ws, deadline=deadline)

    async def reconcile_provider_config(
        self,
        pc: ProviderConfig,
        reconcile: Callable[[ProviderConfig], Awaitable[ReconcileResult]],
    ) -> ReconcileResult:
        """Run ``reconcile`` for a ProviderConfig this replica owns."""
        return await self.gate.run(pc.uid, lambda: reconcile(pc), kind="providerconfig")
