"""Tests for the controller runtime: lifecycle, concurrency and sharding wiring."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from unittest.mock import patch

import pytest
from fakes import (
    FakeFetcher,
    FakeLister,
    FakeProviderConfigs,
    FakePublisher,
    FakeResolver,
    FakeStatusWriter,
    FakeTerraform,
    FakeTerraformFactory,
    make_workspace,
)

from tfconductor.controller.models import ProviderConfig
from tfconductor.controller.reconciler.result import ReconcileResult
from tfconductor.controller.reconciler.runtime import ControllerRuntime
from tfconductor.controller.settings import TFCSettings
from tfconductor.controller.sharding import Membership, PodInfo, hash_and_modulo
from tfconductor.controller.terraform.harness import Harness
from tfconductor.controller.terraform.lock import PluginCacheLock


class StaticMembership:
    def __init__(self, membership: Membership) -> None:
        self.membership = membership

    async def snapshot(self, pod_name: str) -> Membership:
        return self.membership


@pytest.fixture
def settings(tmp_path: Path) -> TFCSettings:
    return TFCSettings(
        tf_dir=str(tmp_path / "tf"),
        tmp_dir=str(tmp_path / "tmp"),
        gc_interval=3600.0,
        timeout=60.0,
        max_reconcile_rate=2,
    )


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(name="default", uid=str(uuid.uuid4()))


def make_runtime(settings: TFCSettings, provider_config: ProviderConfig, **kwargs) -> ControllerRuntime:
    kwargs.setdefault("fetcher", FakeFetcher())
    return ControllerRuntime(
        settings,
        provider_configs=FakeProviderConfigs(provider_config),
        resolver=FakeResolver(),
        lister=FakeLister(),
        publisher=FakePublisher(),
        status_writer=FakeStatusWriter(),
        environ={"PATH": "/usr/bin:/bin"},
        **kwargs,
    )


async def test_start_and_stop(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    runtime = make_runtime(settings, provider_config)
    assert not runtime.running

    async with runtime:
        assert runtime.running
        assert runtime.paths.root.is_dir()
        assert runtime.paths.tmp_root == settings.tmp_root
        assert runtime.paths.tmp_root.is_dir()
        assert {c.parent_dir for c in runtime.collectors} == {runtime.paths.root, runtime.paths.tmp_root}

    assert not runtime.running


async def test_start_is_idempotent(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    runtime = make_runtime(settings, provider_config)
    await runtime.start()
    tasks = set(runtime._tasks)
    await runtime.start()
    assert runtime._tasks == tasks
    await runtime.stop()


def test_harness_shares_the_plugin_cache_lock(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    runtime = make_runtime(settings, provider_config)
    assert isinstance(runtime.lock, PluginCacheLock)

    harness = runtime._terraform(
        dir=runtime.paths.workdir("x"),
        use_plugin_cache=True,
        enable_cli_logging=False,
        envs={"TF_LOG": "DEBUG"},
        deadline=None,
    )
    assert isinstance(harness, Harness)
    assert harness._lock is runtime.lock
    assert harness.path == settings.tf_path
    assert harness.environment() == {"PATH": "/usr/bin:/bin", "TF_LOG": "DEBUG"}


async def test_reconcile_sets_deadline(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    factory = FakeTerraformFactory(FakeTerraform())
    with patch.object(ControllerRuntime, "_terraform", lambda self, **kw: factory(**kw)):
        runtime = make_runtime(settings, provider_config)

    before = asyncio.get_running_loop().time()
    result = await runtime.reconcile(make_workspace())

    assert result.success
    (request,) = factory.requests
    assert before + settings.timeout <= request["deadline"] <= asyncio.get_running_loop().time() + settings.timeout


async def test_reconciles_are_bounded(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    runtime = make_runtime(settings, provider_config)
    running = 0
    peak = 0

    async def slow_reconcile(ws, *, deadline=None) -> ReconcileResult:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return ReconcileResult()

    runtime.reconciler.reconcile = slow_reconcile
    await asyncio.gather(*(runtime.reconcile(make_workspace()) for _ in range(6)))

    assert peak == settings.max_reconcile_rate


def test_sharding_requires_membership(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    settings.enable_sharding = True
    with pytest.raises(ValueError, match="membership"):
        make_runtime(settings, provider_config)


async def test_provider_config_reconcile_is_gated(settings: TFCSettings, provider_config: ProviderConfig) -> None:
    settings.enable_sharding = True
    settings.pod_name = "controller-a"
    membership = Membership(
        replica_set="controller",
        replicas=2,
        pods=[PodInfo("controller-a", ("controller",)), PodInfo("controller-b", ("controller",))],
    )
    runtime = make_runtime(settings, provider_config, membership=StaticMembership(membership))
    calls: list[ProviderConfig] = []

    async def reconcile_pc(pc: ProviderConfig) -> ReconcileResult:
        calls.append(pc)
        return ReconcileResult(requeue_after=600.0)

    # Identity not yet resolved.
    deferred = await runtime.reconcile_provider_config(provider_config, reconcile_pc)
    assert deferred == ReconcileResult(requeue_after=settings.shard_defer_seconds)
    assert calls == []

    assert runtime.identity is not None
    await runtime.identity.refresh()
    result = await runtime.reconcile_provider_config(provider_config, reconcile_pc)

    if hash_and_modulo(provider_config.uid, 2) == 0:
        assert result == ReconcileResult(requeue_after=600.0)
        assert calls == [provider_config]
    else:
        assert result == ReconcileResult()
        assert calls == []
