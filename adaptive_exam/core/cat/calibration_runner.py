"""
Background thread calibration job runner.

Runs MML-EM calibration off the request path and publishes the fitted
parameters as a new ItemParameterRegistry version on success.

Key design:
- Uses threading.Thread (daemon=True) to run calibration in background
- Works on a copy of the inputs; live sessions keep their parameter snapshot
- Runner lock prevents concurrent calibration runs
- In-memory dict tracks job state; finished jobs are evicted after a TTL
- _current_running_job_id tracks if a job is active (cleared in finally block)
"""
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from adaptive_exam.core.cat.calibration import calibrate
from adaptive_exam.core.cat.errors import CalibrationError
from adaptive_exam.core.cat.parameter_registry import ItemParameterRegistry
from adaptive_exam.core.config import settings
from adaptive_exam.core.datetime_utils import utc_now
from adaptive_exam.models import (
    DifficultyCalibration,
    JobStatus,
    QuestionItem,
    ResponseRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class CalibrationJobState:
    """State for a single calibration job."""

    job_id: str
    status: JobStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[DifficultyCalibration] = None
    published_version: Optional[int] = None
    error_message: Optional[str] = None


class CalibrationRunner:
    """
    Runner for calibration jobs.

    Only one calibration can run at a time; a calibration over the full
    response log is CPU heavy and two overlapping runs would race to publish.
    """

    def __init__(self, registry: ItemParameterRegistry, ttl_seconds: Optional[float] = None):
        self._registry = registry
        self._ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else settings.CALIBRATION_JOB_TTL_SECONDS
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, CalibrationJobState] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._current_running_job_id: Optional[str] = None

    def start_job(
        self,
        items: Sequence[QuestionItem],
        responses: Sequence[ResponseRecord],
        publish: bool = True,
        **calibration_kwargs: Any,
    ) -> CalibrationJobState:
        """
        Start a new calibration job in a background thread.

        Args:
            items: Items to calibrate
            responses: Response log to calibrate from
            publish: Publish updated parameters to the registry on success
            **calibration_kwargs: Passed through to calibrate()

        Returns:
            CalibrationJobState with job_id and initial status

        Raises:
            RuntimeError: If a job is already running
        """
        with self._lock:
            if self._current_running_job_id is not None:
                current_job = self._jobs.get(self._current_running_job_id)
                if current_job and current_job.status == JobStatus.RUNNING:
                    raise RuntimeError(
                        f"Calibration job already running: {self._current_running_job_id}"
                    )

            self._evict_expired_locked(utc_now())
            timestamp = utc_now().strftime("%Y%m%d%H%M%S")
            job_id = f"calibration_{timestamp}_{secrets.token_hex(4)}"

            job = CalibrationJobState(
                job_id=job_id,
                status=JobStatus.RUNNING,
                started_at=utc_now(),
            )
            self._jobs[job_id] = job
            self._current_running_job_id = job_id

            thread = threading.Thread(
                target=self._run_calibration_thread,
                args=(job_id, list(items), list(responses), publish, calibration_kwargs),
                daemon=True,
                name=f"calibration-{job_id}",
            )
            self._threads[job_id] = thread

        thread.start()

        logger.info(
            f"Started calibration job: {job_id}",
            extra={"job_id": job_id, "action": "calibrate"},
        )
        return job

    def _run_calibration_thread(
        self,
        job_id: str,
        items: List[QuestionItem],
        responses: List[ResponseRecord],
        publish: bool,
        calibration_kwargs: Dict[str, Any],
    ) -> None:
        try:
            logger.info(
                f"Calibration job {job_id} started in thread: "
                f"{len(items)} items, {len(responses)} responses"
            )

            calibration = calibrate(
                items,
                responses,
                calibration_id=job_id,
                **calibration_kwargs,
            )

            version = None
            if publish:
                version = self._registry.publish(
                    calibration.updated_parameters(),
                    source=f"calibration:{job_id}",
                )

            with self._lock:
                job = self._jobs.get(job_id)
                if job:
                    job.status = JobStatus.COMPLETED
                    job.completed_at = utc_now()
                    job.result = calibration
                    job.published_version = version

            logger.info(
                f"Calibration job {job_id} completed: "
                f"{len(calibration.updated_parameters())} calibrated, "
                f"{len(calibration.fit_statistics.excluded_items)} excluded, "
                f"published version={version}"
            )

        except CalibrationError as e:
            logger.warning(f"Calibration job {job_id} failed: {e.message}")
            self._mark_failed(job_id, e.message)

        except Exception as e:
            logger.exception(f"Calibration job {job_id} failed with unexpected error")
            self._mark_failed(job_id, f"Unexpected error: {str(e)}")

        finally:
            with self._lock:
                if self._current_running_job_id == job_id:
                    self._current_running_job_id = None

    def _mark_failed(self, job_id: str, message: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.FAILED
                job.completed_at = utc_now()
                job.error_message = message

    def get_job(self, job_id: str) -> Optional[CalibrationJobState]:
        """
        Get the state of a calibration job.

        Args:
            job_id: Job identifier

        Returns:
            CalibrationJobState if found, None otherwise
        """
        with self._lock:
            return self._jobs.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[CalibrationJobState]:
        """Block until the job's thread finishes (or timeout), then return its state."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_job(job_id)

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove finished jobs older than the TTL.

        Returns:
            Number of jobs removed.
        """
        with self._lock:
            removed = self._evict_expired_locked(now or utc_now())
        if removed:
            logger.debug(f"Evicted {removed} finished calibration jobs")
        return removed

    def _evict_expired_locked(self, now: datetime) -> int:
        cutoff = now - self._ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status != JobStatus.RUNNING
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._threads.pop(job_id, None)
        return len(expired)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._current_running_job_id is not None
