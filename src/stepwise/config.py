"""Engine configuration loaded from environment variables."""

import os

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Stepwise engine configuration.

    Construct one explicitly and hand it to ``WorkflowEngine``; the engine
    never reads a process-wide settings object.
    """

    # Per-attempt timeout when neither the step nor the definition sets one
    default_timeout: float = 300.0

    # Tighter bound for external (network) calls
    external_call_timeout: float = 60.0

    # Concurrent steps per layer (0 = number of CPU cores)
    max_workers: int = 0

    # Concurrent external calls per run (provider rate limits)
    max_external_concurrency: int = 4

    # Whole-run deadline in seconds (0 = none)
    run_deadline: float = 0.0

    # Logging
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="STEPWISE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @computed_field
    @property
    def worker_limit(self) -> int:
        """Effective worker-pool size."""
        if self.max_workers > 0:
            return self.max_workers
        return os.cpu_count() or 1
