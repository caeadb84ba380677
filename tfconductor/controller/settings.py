"""Controller configuration loaded from TFC_* environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TFCSettings(BaseSettings):
    """tfconductor controller settings.

    All fields are read from environment variables with the ``TFC_`` prefix.
    For example, ``TFC_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    A few fields also accept the names used by existing deployments:
    ``XP_TF_DIR`` for the work dir root and the downward-API ``POD_NAME`` /
    ``POD_NAMESPACE`` variables for shard identity.
    """

    model_config = SettingsConfigDict(
        env_prefix="TFC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Terraform -------------------------------------------------------------
    tf_path: str = "terraform"
    """Terraform binary to invoke (looked up on PATH when not absolute)."""

    tf_dir: str = Field(default="/tf", validation_alias=AliasChoices("TFC_TF_DIR", "XP_TF_DIR", "tf_dir"))
    """Root under which every workspace gets ``{tf_dir}/{uid}``."""

    tmp_dir: str = "/tmp"  # noqa: S108
    """Root for staged git credentials: ``{tmp_dir}{tf_dir}/{uid}``."""

    timeout: float = 1200.0
    """Seconds a single reconcile (and so every terraform process in it) may run."""

    # -- Reconciliation --------------------------------------------------------
    poll_interval: float = 600.0
    max_reconcile_rate: int = 1
    """Maximum number of concurrent reconciles."""

    # -- Garbage collection ----------------------------------------------------
    gc_interval: float = 3600.0

    # -- Sharding --------------------------------------------------------------
    enable_sharding: bool = False
    shard_defer_seconds: float = 30.0
    """Backoff applied while this replica's shard identity is unknown."""

    identity_refresh_interval: float = 30.0
    pod_name: str | None = Field(default=None, validation_alias=AliasChoices("TFC_POD_NAME", "POD_NAME", "pod_name"))
    pod_namespace: str | None = Field(
        default=None, validation_alias=AliasChoices("TFC_POD_NAMESPACE", "POD_NAMESPACE", "pod_namespace")
    )

    # -- Helpers ---------------------------------------------------------------

    @property
    def tmp_root(self) -> Path:
        """``{tmp_dir}{tf_dir}`` -- the tf_dir tree mirrored under tmp_dir."""
        return Path(self.tmp_dir) / Path(self.tf_dir).relative_to(Path(self.tf_dir).anchor)


@lru_cache(maxsize=1)
def get_settings() -> TFCSettings:
    """Return a cached settings instance.

    Call ``get_settings.cache_clear()`` in tests to force a re-read after
    overriding env vars.
    """
    return TFCSettings()
