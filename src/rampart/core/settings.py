"""Runtime settings for rampart.

Settings are read once from ``RAMPART_*`` environment variables (and an
optional ``.env`` file) and cached. Components receive the values they need
explicitly; in particular the ``debug`` flag, which decides how much fault
detail a boundary exposes, is resolved here at startup and injected, never
sniffed from the environment when a fault happens.

Fields
──────
debug               : Expose tracebacks (redacted) in boundary snapshots
log_level           : structlog filtering level
json_logs           : JSON renderer (True), console (False), auto (None)
data_dir            : Directory for the persistent store
store_path          : SQLite file backing ScopedStorage (defaults under data_dir)
key_prefix          : Namespace prefix for every storage key
queue_max_attempts  : Replays before a deferred action is discarded
queue_max_age       : Seconds before a deferred action expires (None = never)
recent_fault_limit  : Records kept by MemorySink
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RampartSettings(BaseSettings):
    """Process-wide rampart configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RAMPART_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".rampart",
        description="Directory for the persistent key/value store",
    )
    store_path: Path | None = None
    key_prefix: str = "rampart"

    # ── Deferred actions ─────────────────────────────────────────
    queue_max_attempts: int = Field(default=3, ge=1)
    queue_max_age: float | None = Field(default=None, gt=0)

    # ── Reporting ────────────────────────────────────────────────
    recent_fault_limit: int = Field(default=50, ge=1)

    @property
    def resolved_store_path(self) -> Path:
        return self.store_path or (self.data_dir / "rampart.db")


@lru_cache(maxsize=1)
def get_settings() -> RampartSettings:
    """Load settings once per process."""
    return RampartSettings()
