"""
Store for background exam generation jobs.

Runs generate_exam_with_progress() in daemon threads keyed by job id, so a
large assembly can be polled and cancelled instead of blocking the caller.

Key Features:
- Thread-safe job registration and status lookup
- Progress snapshots per objective
- Cooperative cancellation via CancellationToken
- Explicit TTL eviction of finished jobs (plus opportunistic eviction on list)

Usage:
    store = GenerationJobStore()
    job = store.submit(requirements, pool)
    store.get_job(job.job_id).progress
    store.cancel(job.job_id)
"""
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from adaptive_exam.core.cat.errors import ExamEngineError, GenerationCancelled
from adaptive_exam.core.cat.exam_generator import (
    CancellationToken,
    GenerationProgress,
    generate_exam_with_progress,
)
from adaptive_exam.core.config import settings
from adaptive_exam.core.datetime_utils import utc_now
from adaptive_exam.models import AdaptiveExam, ExamRequirements, JobStatus, QuestionItem

logger = logging.getLogger(__name__)

FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class GenerationJob:
    """State of one background generation job."""

    job_id: str
    status: JobStatus
    created_at: datetime
    progress: Optional[GenerationProgress] = None
    finished_at: Optional[datetime] = None
    exam: Optional[AdaptiveExam] = None
    error: Optional[Dict[str, Any]] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert job state to a plain dictionary."""
        progress = None
        if self.progress is not None:
            progress = {
                "objectives_done": self.progress.objectives_done,
                "objectives_total": self.progress.objectives_total,
                "current_objective": self.progress.current_objective,
                "items_selected": self.progress.items_selected,
                "fraction": self.progress.fraction,
            }
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "progress": progress,
            "exam_id": self.exam.exam_id if self.exam else None,
            "error": self.error,
        }


class GenerationJobStore:
    """
    Thread-safe registry of background generation jobs.

    Finished jobs stay available for ``ttl_seconds`` after they finish and
    are then removed by :meth:`evict_expired`.
    """

    def __init__(self, ttl_seconds: Optional[float] = None):
        self._ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else settings.GENERATION_JOB_TTL_SECONDS
        )
        self._lock = threading.RLock()
        self._jobs: Dict[str, GenerationJob] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def submit(
        self,
        requirements: ExamRequirements,
        item_pool: Sequence[QuestionItem],
        exam_id: Optional[str] = None,
        on_complete: Optional[Callable[[AdaptiveExam], None]] = None,
    ) -> GenerationJob:
        """
        Start generating an exam in a background thread.

        Args:
            requirements: Exam requirements.
            item_pool: Candidate items.
            exam_id: Optional id for the generated exam.
            on_complete: Called with the exam after a successful run.

        Returns:
            The new job, in RUNNING state.
        """
        timestamp = utc_now().strftime("%Y%m%d%H%M%S")
        job_id = f"generation_{timestamp}_{secrets.token_hex(4)}"
        job = GenerationJob(job_id=job_id, status=JobStatus.RUNNING, created_at=utc_now())

        thread = threading.Thread(
            target=self._run,
            args=(job, requirements, list(item_pool), exam_id, on_complete),
            daemon=True,
            name=f"generation-{job_id}",
        )
        with self._lock:
            self._jobs[job_id] = job
            self._threads[job_id] = thread
        thread.start()

        logger.info(
            f"Started generation job {job_id}: "
            f"{len(requirements.learning_objectives)} objectives, {len(item_pool)} pool items",
            extra={"job_id": job_id, "action": "generate_exam"},
        )
        return job

    def _run(
        self,
        job: GenerationJob,
        requirements: ExamRequirements,
        item_pool: List[QuestionItem],
        exam_id: Optional[str],
        on_complete: Optional[Callable[[AdaptiveExam], None]],
    ) -> None:
        def record_progress(progress: GenerationProgress) -> None:
            with self._lock:
                job.progress = progress

        try:
            exam = generate_exam_with_progress(
                requirements,
                item_pool,
                progress=record_progress,
                cancel_token=job.cancel_token,
                exam_id=exam_id,
            )
            if on_complete is not None:
                on_complete(exam)
            self._finish(job, JobStatus.COMPLETED, exam=exam)
            logger.info(f"Generation job {job.job_id} completed: exam {exam.exam_id}")

        except GenerationCancelled as e:
            self._finish(job, JobStatus.CANCELLED, error=e.to_dict())
            logger.info(f"Generation job {job.job_id} cancelled")

        except ExamEngineError as e:
            self._finish(job, JobStatus.FAILED, error=e.to_dict())
            logger.warning(f"Generation job {job.job_id} failed: {e.message}")

        except Exception as e:
            self._finish(
                job,
                JobStatus.FAILED,
                error={"code": "internal_error", "message": f"Unexpected error: {str(e)}"},
            )
            logger.exception(f"Generation job {job.job_id} failed with unexpected error")

    def _finish(
        self,
        job: GenerationJob,
        status: JobStatus,
        exam: Optional[AdaptiveExam] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            job.status = status
            job.exam = exam
            job.error = error
            job.finished_at = utc_now()

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation of a running job.

        Returns:
            True if the job was running and has been signalled, False if it is
            unknown or already finished.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_finished:
                return False
            job.cancel_token.cancel()
        logger.info(f"Cancellation requested for generation job {job_id}")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[GenerationJob]:
        """Block until the job's thread finishes (or timeout), then return the job."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        opportunistic_cleanup: bool = True,
    ) -> List[GenerationJob]:
        """List jobs, most recent first, optionally filtered by status."""
        if opportunistic_cleanup:
            self.evict_expired()
        with self._lock:
            jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove finished jobs older than the TTL.

        Returns:
            Number of jobs removed.
        """
        cutoff = (now or utc_now()) - self._ttl
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_finished and job.finished_at is not None and job.finished_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
                self._threads.pop(job_id, None)

        if expired:
            logger.debug(f"Evicted {len(expired)} finished generation jobs")
        return len(expired)
