import os
from dataclasses import dataclass

TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_TIMEOUT = float(os.environ.get("TMDB_TIMEOUT", "10"))
TMDB_MAX_ATTEMPTS = max(1, int(os.environ.get("TMDB_MAX_ATTEMPTS", "3")))

# Upper bound on the synchronous remote attempt made for a user action.
LIST_CALL_TIMEOUT = float(os.environ.get("LIST_CALL_TIMEOUT", "15"))
LIST_CACHE_TTL = int(os.environ.get("LIST_CACHE_TTL", "300"))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class QueueSettings:
    """Tunables for the retry queue and its background processor."""

    max_retries: int = 5
    base_delay_seconds: int = 30
    max_delay_seconds: int = 3600
    process_interval: float = 60.0
    cleanup_interval: float = 24 * 60 * 60
    retention_days: int = 30
    batch_size: int = 100
    concurrency: int = 4
    # An in_progress claim older than this is treated as abandoned.
    claim_lease_seconds: float = 300.0
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "QueueSettings":
        return cls(
            max_retries=int(os.environ.get("QUEUE_MAX_RETRIES", "5")),
            base_delay_seconds=int(os.environ.get("QUEUE_BASE_DELAY_SECONDS", "30")),
            max_delay_seconds=int(os.environ.get("QUEUE_MAX_DELAY_SECONDS", "3600")),
            process_interval=float(os.environ.get("QUEUE_PROCESS_INTERVAL", "60")),
            cleanup_interval=float(os.environ.get("QUEUE_CLEANUP_INTERVAL", str(24 * 60 * 60))),
            retention_days=int(os.environ.get("QUEUE_RETENTION_DAYS", "30")),
            batch_size=int(os.environ.get("QUEUE_BATCH_SIZE", "100")),
            concurrency=max(1, int(os.environ.get("QUEUE_CONCURRENCY", "4"))),
            claim_lease_seconds=float(os.environ.get("QUEUE_CLAIM_LEASE_SECONDS", "300")),
            enabled=_env_bool("QUEUE_PROCESSOR_ENABLED", True),
        )


queue_settings = QueueSettings.from_env()
