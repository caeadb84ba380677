"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from tfconductor.controller.settings import TFCSettings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("TFC_TF_DIR", "XP_TF_DIR", "TFC_POD_NAME", "POD_NAME", "TFC_POD_NAMESPACE", "POD_NAMESPACE"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the way.
    monkeypatch.chdir(tmp_path)


def test_defaults() -> None:
    s = TFCSettings()
    assert s.tf_dir == "/tf"
    assert s.tf_path == "terraform"
    assert s.max_reconcile_rate == 1
    assert s.enable_sharding is False
    assert s.tmp_root == Path("/tmp/tf")


def test_prefixed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TFC_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TFC_MAX_RECONCILE_RATE", "4")
    monkeypatch.setenv("TFC_ENABLE_SHARDING", "true")

    s = TFCSettings()
    assert s.log_level == "DEBUG"
    assert s.max_reconcile_rate == 4
    assert s.enable_sharding is True


def test_legacy_tf_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XP_TF_DIR", "/var/tf")
    s = TFCSettings()
    assert s.tf_dir == "/var/tf"
    assert s.tmp_root == Path("/tmp/var/tf")


def test_prefixed_tf_dir_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XP_TF_DIR", "/var/tf")
    monkeypatch.setenv("TFC_TF_DIR", "/srv/tf")
    assert TFCSettings().tf_dir == "/srv/tf"


def test_downward_api_pod_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POD_NAME", "controller-5d8f-a")
    monkeypatch.setenv("POD_NAMESPACE", "crossplane-system")

    s = TFCSettings()
    assert s.pod_name == "controller-5d8f-a"
    assert s.pod_namespace == "crossplane-system"


def test_env_file(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("TFC_TIMEOUT=90\n")
    assert TFCSettings().timeout == 90.0


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = get_settings()
    monkeypatch.setenv("TFC_POLL_INTERVAL", "5")
    assert get_settings() is first

    get_settings.cache_clear()
    assert get_settings().poll_interval == 5.0
