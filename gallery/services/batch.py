from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional, Set

from gallery.core.logging import get_logger
from gallery.ingest.errors import IngestError
from gallery.ingest.models import BatchReport, IngestStage, ReportCollector, StagedFile

from .ingest_service import IngestionOrchestrator

DEFAULT_MAX_CONCURRENCY = 5


class BatchCoordinator:
    """Fans staged files out to the orchestrator under a concurrency limit.

    One file's failure lands in the report and never touches its siblings.
    If ``ingest_all`` is cancelled (``asyncio.wait_for``, ``asyncio.timeout``
    or ``Task.cancel``) it stops dispatching, lets in-flight runs finish and
    returns the partial report with ``was_cancelled`` set. Undispatched files
    are listed in ``cancelled`` and still belong to the caller.
    """

    def __init__(self, orchestrator: IngestionOrchestrator, *, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        _check_limit(max_concurrency)
        self.orchestrator = orchestrator
        self.max_concurrency = max_concurrency
        self.logger = get_logger(component="batch_coordinator")

    async def ingest_all(
        self,
        staged_files: Iterable[StagedFile],
        max_concurrency: Optional[int] = None,
    ) -> BatchReport:
        limit = self.max_concurrency if max_concurrency is None else max_concurrency
        _check_limit(limit)

        files: List[StagedFile] = list(staged_files)
        collector = ReportCollector()
        semaphore = asyncio.Semaphore(limit)
        in_flight: Set[asyncio.Task] = set()
        dispatched = 0

        self.logger.info("batch_started", files=len(files), max_concurrency=limit)
        try:
            for index, staged in enumerate(files):
                await semaphore.acquire()
                task = asyncio.create_task(self._run_one(index, staged, semaphore, collector))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
                dispatched += 1
            if in_flight:
                await asyncio.wait(set(in_flight))
        except asyncio.CancelledError:
            undispatched = tuple(files[dispatched:])
            self.logger.warning(
                "batch_cancelled",
                in_flight=len(in_flight),
                undispatched=len(undispatched),
            )
            await self._drain(in_flight)
            report = collector.freeze(cancelled=undispatched, was_cancelled=True)
            self.logger.info("batch_finished", summary=report.summary(), was_cancelled=True)
            return report

        report = collector.freeze()
        self.logger.info("batch_finished", summary=report.summary(), failed=len(report.failed))
        return report

    async def _run_one(
        self,
        index: int,
        staged: StagedFile,
        semaphore: asyncio.Semaphore,
        collector: ReportCollector,
    ) -> None:
        try:
            record = await self.orchestrator.ingest(staged)
        except IngestError as exc:
            exc.input_index = index
            collector.add_failure(exc)
        except Exception as exc:
            self.logger.exception("batch_run_crashed", filename=staged.original_name)
            error = IngestError(staged.original_name, IngestStage.staged, exc)
            error.input_index = index
            collector.add_failure(error)
        else:
            collector.add_success(record.with_index(index))
        finally:
            semaphore.release()

    async def _drain(self, in_flight: Set[asyncio.Task]) -> None:
        # Runs are never killed mid-upload. Repeated cancellation is logged and the wait resumes.
        while in_flight:
            try:
                await asyncio.wait(set(in_flight))
            except asyncio.CancelledError:
                self.logger.warning("batch_drain_interrupted", in_flight=len(in_flight))


def _check_limit(value: int) -> None:
    if value < 1:
        raise ValueError(f"max_concurrency must be at least 1, got {value}")


__all__ = ["BatchCoordinator", "DEFAULT_MAX_CONCURRENCY"]
