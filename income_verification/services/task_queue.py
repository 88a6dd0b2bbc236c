"""Background analysis queue, job outcome registry and stuck-document sweep."""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.config import settings
from income_verification.models.db_models import DocumentStatus, IncomeDocument, local_now
from income_verification.services.document_pipeline import (
    DocumentPipeline,
    JobOutcome,
    mark_needs_review,
    processing_document_ids,
)
from income_verification.services.extraction.adapter import Extraction
from income_verification.services.override_service import OverrideService

logger = logging.getLogger(__name__)


# Global registry of job outcomes, keyed by document id
_job_outcomes: Dict[UUID, JobOutcome] = {}

# States whose outcome can expire; queued and processing jobs are still running
FINISHED_STATES = {"completed", "needs_review", "duplicate", "deleted", "skipped"}


def record_outcome(outcome: JobOutcome) -> JobOutcome:
    """Register the latest outcome for a document."""
    _job_outcomes[outcome.document_id] = outcome
    prune_outcomes()
    return outcome


def get_outcome(document_id: UUID) -> Optional[JobOutcome]:
    """Get the latest known outcome for a document."""
    return _job_outcomes.get(document_id)


def remove_outcome(document_id: UUID):
    """Remove an outcome from the registry."""
    if document_id in _job_outcomes:
        del _job_outcomes[document_id]


def prune_outcomes(ttl_minutes: Optional[int] = None) -> int:
    """
    Drop finished outcomes older than the TTL. Returns how many were dropped.

    A duplicate outcome is the only record of a rejected upload, so it is
    kept until a client has polled it.
    """
    ttl_minutes = settings.JOB_OUTCOME_TTL_MINUTES if ttl_minutes is None else ttl_minutes
    cutoff = local_now() - timedelta(minutes=ttl_minutes)
    expired = [
        document_id
        for document_id, outcome in _job_outcomes.items()
        if outcome.state in FINISHED_STATES
        and outcome.updated_at < cutoff
        and (outcome.state != "duplicate" or outcome.polled)
    ]
    for document_id in expired:
        del _job_outcomes[document_id]
    if expired:
        logger.debug(f"Pruned {len(expired)} expired job outcomes")
    return len(expired)


class AnalysisQueue:
    """In-process job queue consumed by a pool of worker tasks."""

    def __init__(self, pipeline: DocumentPipeline, workers: Optional[int] = None):
        self.pipeline = pipeline
        self.worker_count = workers or settings.ANALYSIS_WORKERS
        self.queue: asyncio.Queue[Tuple[UUID, Optional[Extraction]]] = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self, sweep: bool = True):
        """Start the worker tasks, and the periodic sweep unless disabled."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"analysis-worker-{n}")
            for n in range(self.worker_count)
        ]
        if sweep:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="stuck-document-sweep")
        logger.info(f"Started {self.worker_count} analysis workers")

    async def stop(self):
        """Cancel workers; queued jobs stay PROCESSING and are recovered on next start."""
        tasks = self._workers + ([self._sweeper] if self._sweeper else [])
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._sweeper = None
        logger.info("Stopped analysis workers")

    async def enqueue(self, document_id: UUID, extraction: Optional[Extraction] = None):
        """Queue a document for analysis."""
        record_outcome(JobOutcome(document_id, "queued", "Waiting for analysis"))
        await self.queue.put((document_id, extraction))
        logger.debug(f"Queued document {document_id} (queue size {self.queue.qsize()})")

    async def join(self):
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def _worker(self, number: int):
        while True:
            document_id, extraction = await self.queue.get()
            try:
                record_outcome(JobOutcome(document_id, "processing", "Analyzing document"))
                outcome = await self.pipeline.process(document_id, extraction)
                record_outcome(outcome)
            except Exception as e:
                logger.exception(f"Worker {number} failed on document {document_id}: {e}")
            finally:
                self.queue.task_done()

    async def recover(self) -> List[UUID]:
        """Re-enqueue every document left PROCESSING by a previous run."""
        async with self.pipeline.session_maker() as db:
            document_ids = await processing_document_ids(db)
        for document_id in document_ids:
            await self.enqueue(document_id)
        if document_ids:
            logger.info(f"Recovered {len(document_ids)} PROCESSING documents")
        return document_ids

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
            try:
                async with self.pipeline.session_maker() as db:
                    await sweep_stuck_documents(db)
                    await db.commit()
            except Exception as e:
                logger.exception(f"Stuck document sweep failed: {e}")


async def sweep_stuck_documents(
    db: AsyncSession,
    minutes: Optional[int] = None,
    overrides: Optional[OverrideService] = None,
) -> List[UUID]:
    """
    Move documents PROCESSING for longer than ``minutes`` to NEEDS_REVIEW.

    Runs in the caller's transaction.
    """
    minutes = settings.STUCK_DOCUMENT_MINUTES if minutes is None else minutes
    overrides = overrides or OverrideService()
    cutoff = local_now() - timedelta(minutes=minutes)

    result = await db.execute(
        select(IncomeDocument.id).where(
            IncomeDocument.status == DocumentStatus.PROCESSING,
            func.coalesce(IncomeDocument.processing_started_at, IncomeDocument.upload_date) < cutoff,
        )
    )
    stuck = list(result.scalars().all())

    reclaimed = []
    for document_id in stuck:
        explanation = f"Document processing timed out after {minutes} minutes - needs manual review"
        if await mark_needs_review(db, overrides, document_id, explanation):
            record_outcome(JobOutcome(document_id, "needs_review", explanation))
            reclaimed.append(document_id)

    if reclaimed:
        logger.warning(f"Reclaimed {len(reclaimed)} stuck documents")
    return reclaimed


# Application-wide queue, set on startup
_analysis_queue: Optional[AnalysisQueue] = None


def set_analysis_queue(queue: Optional[AnalysisQueue]):
    global _analysis_queue
    _analysis_queue = queue


def get_analysis_queue() -> AnalysisQueue:
    """Get the running analysis queue."""
    if _analysis_queue is None:
        raise RuntimeError("Analysis queue has not been started")
    return _analysis_queue
