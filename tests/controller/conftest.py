"""Fixtures for controller tests."""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from fakes import FakeFetcher, FakeProviderConfigs, FakeResolver, FakeTerraform, FakeTerraformFactory, make_workspace

from tfconductor.controller.models import ProviderConfig, Workspace
from tfconductor.controller.reconciler.connector import Connector
from tfconductor.controller.workdir.paths import WorkDirPaths

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace() -> Workspace:
    return make_workspace()


@pytest.fixture
def fake_tf() -> FakeTerraform:
    return FakeTerraform()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(name="default", uid=str(uuid.uuid4()))


@pytest.fixture
def paths(tmp_path: Path) -> WorkDirPaths:
    return WorkDirPaths(tmp_path / "tf", tmp_path / "tmp" / "tf")


@pytest.fixture
def factory(fake_tf: FakeTerraform) -> FakeTerraformFactory:
    return FakeTerraformFactory(fake_tf)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def provider_configs(provider_config: ProviderConfig) -> FakeProviderConfigs:
    return FakeProviderConfigs(provider_config)


@pytest.fixture
def connector(
    factory: FakeTerraformFactory,
    fetcher: FakeFetcher,
    provider_configs: FakeProviderConfigs,
    resolver: FakeResolver,
    paths: WorkDirPaths,
) -> Connector:
    return Connector(
        provider_configs=provider_configs,
        resolver=resolver,
        paths=paths,
        terraform=factory,
        fetcher=fetcher,
        environ={},
    )
