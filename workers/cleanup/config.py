# workers/cleanup/config.py
"""
Configuration for the job cleanup worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

# Worker runs outside the API process, so it loads .env itself.
load_dotenv(find_dotenv(usecwd=True))


@dataclass
class CleanupConfig:
    """Configuration for the job cleanup worker."""

    enabled: bool = os.getenv("CLEANUP_ENABLED", "true").lower() == "true"

    # Scheduling
    run_interval_minutes: int = int(os.getenv("CLEANUP_RUN_INTERVAL_MINUTES", "60"))
    run_once: bool = os.getenv("CLEANUP_RUN_ONCE", "false").lower() == "true"

    # Retention
    completed_job_retention_days: int = int(os.getenv("CLEANUP_COMPLETED_RETENTION_DAYS", "7"))
    failed_job_retention_days: int = int(os.getenv("CLEANUP_FAILED_RETENTION_DAYS", "30"))

    # Max jobs deleted per status per pass
    batch_size: int = int(os.getenv("CLEANUP_BATCH_SIZE", "100"))

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if self.run_interval_minutes <= 0:
            errors.append("CLEANUP_RUN_INTERVAL_MINUTES must be greater than zero")
        if self.completed_job_retention_days < 0:
            errors.append("CLEANUP_COMPLETED_RETENTION_DAYS cannot be negative")
        if self.failed_job_retention_days < 0:
            errors.append("CLEANUP_FAILED_RETENTION_DAYS cannot be negative")
        if self.batch_size <= 0:
            errors.append("CLEANUP_BATCH_SIZE must be greater than zero")

        return errors


def get_config() -> CleanupConfig:
    """Get worker configuration from environment."""
    return CleanupConfig()
