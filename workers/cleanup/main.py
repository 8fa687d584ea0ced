from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.app.domain.errors import WorkerConfigurationError
from src.app.domain.models import ConversionJob, ConversionStatus, StorageLocation
from src.app.infra.db.base import ConversionJobRepository
from src.app.infra.storage.base import CloudStorageProvider
from workers.cleanup.config import CleanupConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("cleanup-worker")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CleanupResult:
    completed_jobs_deleted: int = 0
    failed_jobs_deleted: int = 0
    cloud_objects_deleted: int = 0
    cloud_object_failures: int = 0

    @property
    def total_jobs_deleted(self) -> int:
        return self.completed_jobs_deleted + self.failed_jobs_deleted


class JobCleanupWorker:
    """
    Periodically deletes conversion jobs past their retention window.

    Completed jobs are kept for `completed_job_retention_days` after they
    finish and failed jobs for `failed_job_retention_days`. Cloud objects
    belonging to expired completed jobs are deleted before their rows; a
    failed object delete is logged and does not keep the row alive.
    """

    def __init__(
        self,
        config: CleanupConfig,
        job_repository: ConversionJobRepository,
        storage_provider: CloudStorageProvider,
        now: Callable[[], datetime] = _now_utc,
    ):
        self.config = config
        self.job_repo = job_repository
        self.storage = storage_provider
        self._now = now
        self.running = False
        self.passes_completed = 0
        self._stop_event = threading.Event()

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("Job cleanup worker is disabled")
            return

        self._validate_configuration()
        self._setup_signal_handlers()
        self._log_startup_info()
        self.running = True
        self._run_main_loop()
        self._shutdown()

    def stop(self) -> None:
        self.running = False
        self._stop_event.set()

    def cleanup_expired_jobs(self) -> CleanupResult:
        now = self._now()
        result = CleanupResult()

        completed_cutoff = now - timedelta(days=self.config.completed_job_retention_days)
        expired_completed = self.job_repo.get_expired(
            ConversionStatus.COMPLETED, completed_cutoff, self.config.batch_size
        )
        for job in expired_completed:
            self._delete_cloud_object(job, result)
        result.completed_jobs_deleted = self.job_repo.delete_many([job.id for job in expired_completed])

        failed_cutoff = now - timedelta(days=self.config.failed_job_retention_days)
        expired_failed = self.job_repo.get_expired(
            ConversionStatus.FAILED, failed_cutoff, self.config.batch_size
        )
        result.failed_jobs_deleted = self.job_repo.delete_many([job.id for job in expired_failed])

        if result.total_jobs_deleted:
            logger.info(
                "Job cleanup completed: completed_deleted=%d, failed_deleted=%d, cloud_objects_deleted=%d",
                result.completed_jobs_deleted,
                result.failed_jobs_deleted,
                result.cloud_objects_deleted,
            )
        else:
            logger.debug("Job cleanup completed: no expired jobs found")

        return result

    def _delete_cloud_object(self, job: ConversionJob, result: CleanupResult) -> None:
        if job.storage_location != StorageLocation.CLOUD_STORAGE or not job.cloud_storage_key:
            return

        if self.storage.delete(job.cloud_storage_key):
            result.cloud_objects_deleted += 1
        else:
            result.cloud_object_failures += 1
            logger.warning(
                "Failed to delete cloud storage object for job %s: key=%s",
                job.id,
                job.cloud_storage_key,
            )

    def _validate_configuration(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _log_startup_info(self) -> None:
        logger.info(
            "Starting job cleanup worker: interval=%dm, completed_retention=%dd, failed_retention=%dd, batch_size=%d",
            self.config.run_interval_minutes,
            self.config.completed_job_retention_days,
            self.config.failed_job_retention_days,
            self.config.batch_size,
        )

    def _run_main_loop(self) -> None:
        while self.running:
            self._run_pass()

            if self.config.run_once:
                break

            # Returns early when a shutdown signal sets the event.
            self._stop_event.wait(self.config.run_interval_minutes * 60)

    def _run_pass(self) -> CleanupResult | None:
        started = time.monotonic()
        try:
            result = self.cleanup_expired_jobs()
        except (MemoryError, RecursionError):
            raise
        except Exception:
            logger.exception("Error occurred during job cleanup")
            return None

        self.passes_completed += 1
        logger.debug("Cleanup pass took %.2fs", time.monotonic() - started)
        return result

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Received shutdown signal %d", signum)
        self.stop()

    def _shutdown(self) -> None:
        logger.info("Job cleanup worker stopped: passes_completed=%d", self.passes_completed)


def create_default_dependencies(config: CleanupConfig) -> tuple[
    ConversionJobRepository,
    CloudStorageProvider,
]:
    from supabase import create_client

    from src.app.config import CloudStorageSettings
    from src.app.infra.db.supabase_jobs_repo import SupabaseConversionJobRepository
    from src.app.infra.storage.s3_provider import create_storage_provider

    client = create_client(config.supabase_url, config.supabase_key)
    job_repository = SupabaseConversionJobRepository(client)
    storage_provider = create_storage_provider(CloudStorageSettings())

    return job_repository, storage_provider


def main() -> None:
    config = get_config()
    job_repo, storage = create_default_dependencies(config)

    worker = JobCleanupWorker(
        config=config,
        job_repository=job_repo,
        storage_provider=storage,
    )

    worker.start()


if __name__ == "__main__":
    main()
