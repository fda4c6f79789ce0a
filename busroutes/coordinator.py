"""Run coordinator: one locked, bounded batch per invocation.

Each :meth:`RunCoordinator.run` call takes the run lock, loads the pipeline
state, (re)builds the work queue when it is exhausted, processes at most
``batch_size`` items and persists the state once. When work remains it asks
the scheduler for a continuation instead of looping.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from tqdm import tqdm

from .geocoding import GeocodingCache
from .generative import GenerativeExtractor
from .models import (
    ExtractionQualityError,
    PipelineState,
    RouteDraft,
    RouteType,
    WorkItem,
)
from .normalize import normalize_routes
from .publisher import Publisher
from .sources import DocumentStore
from .structured import StructuredTextExtractor
from .utils import ContinuationScheduler, RunLock, StateRepository
from .work_queue import build_work_queue

log = logging.getLogger(__name__)

STATUS_LOCKED = "locked"
STATUS_CONTINUED = "continued"
STATUS_COMPLETE = "complete"


@dataclass
class RunSummary:
    status: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    published: list[str] = field(default_factory=list)
    queue_size: int = 0
    cursor: int = 0


class RunCoordinator:
    """Drive one bounded batch of the ingestion pipeline."""

    def __init__(
        self,
        *,
        store: DocumentStore,
        state_repo: StateRepository,
        lock: RunLock,
        scheduler: ContinuationScheduler,
        structured: StructuredTextExtractor,
        generative: GenerativeExtractor,
        geocoding: Callable[[PipelineState], GeocodingCache],
        publisher: Publisher,
        reg_ed_folder_id: str,
        spec_ed_folder_id: str,
        batch_size: int = 6,
        recency_days: int = 30,
        continuation_delay_s: float = 60.0,
        validate: Optional[Callable[[], None]] = None,
        progress: bool = False,
    ) -> None:
        self.store = store
        self.state_repo = state_repo
        self.lock = lock
        self.scheduler = scheduler
        self.structured = structured
        self.generative = generative
        self.geocoding = geocoding
        self.publisher = publisher
        self.reg_ed_folder_id = reg_ed_folder_id
        self.spec_ed_folder_id = spec_ed_folder_id
        self.batch_size = max(1, batch_size)
        self.recency_days = recency_days
        self.continuation_delay_s = continuation_delay_s
        self.validate = validate
        self.progress = progress

    # ------------------------------------------------------------------
    # Per-item pipeline
    # ------------------------------------------------------------------

    def extract(self, item: WorkItem) -> tuple[list[RouteDraft], str]:
        if item.route_type is RouteType.REG_ED_DOC:
            document = self.store.read_document(item.source_id)
            return self.structured.extract(document, item), self.structured.method
        return self.generative.extract(item), self.generative.method

    def process_item(self, item: WorkItem, geocoder: GeocodingCache) -> list[str]:
        """Extract, clean, geocode and publish one item; return artifact refs."""
        drafts, method = self.extract(item)
        routes = normalize_routes(drafts)
        if not routes:
            raise ExtractionQualityError(
                f"{item.source_name}: no routes with stops ({len(drafts)} drafts)"
            )
        refs = []
        for route in routes:
            stats = geocoder.geocode_stops(route.stops)
            log.debug(
                "%s [%s]: geocode hits=%s misses=%s failures=%s",
                item.source_name,
                route.period,
                stats.hits,
                stats.misses,
                stats.failures,
            )
            refs.append(self.publisher.publish(route, item, method=method))
        return refs

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run_batch(self, state: PipelineState, summary: RunSummary) -> None:
        geocoder = self.geocoding(state)
        bar = tqdm(total=self.batch_size, desc="Processing routes", disable=not self.progress)
        try:
            while summary.processed + summary.failed < self.batch_size and not state.exhausted:
                item = state.queue[state.cursor]
                state.cursor += 1
                if state.is_current(item):
                    summary.skipped += 1
                    log.debug("Unchanged, skipping: %s", item.source_name)
                    continue

                t0 = time.perf_counter()
                try:
                    refs = self.process_item(item, geocoder)
                except ExtractionQualityError as exc:
                    summary.failed += 1
                    log.warning("Left for a later pass: %s", exc)
                except Exception:
                    summary.failed += 1
                    log.exception("Failed to process %s (%s)", item.source_name, item.source_id)
                else:
                    state.mark_processed(item)
                    summary.processed += 1
                    summary.published.extend(refs)
                    log.info(
                        "Processed %s: %s artifacts in %.2fs",
                        item.source_name,
                        len(refs),
                        time.perf_counter() - t0,
                    )
                bar.update(1)
        finally:
            bar.close()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        with self.lock.acquire() as acquired:
            if not acquired:
                log.info("Another run holds the lock; exiting")
                return RunSummary(status=STATUS_LOCKED)
            return self._run_locked()

    def _run_locked(self) -> RunSummary:
        if self.validate is not None:
            self.validate()

        state = self.state_repo.load()
        if not state.queue or state.exhausted:
            items = build_work_queue(
                self.store,
                self.reg_ed_folder_id,
                self.spec_ed_folder_id,
                recency_days=self.recency_days,
            )
            state.reset_queue(items)

        summary = RunSummary(status=STATUS_COMPLETE)
        try:
            self.run_batch(state, summary)
        finally:
            if state.exhausted:
                state.reset_queue()
                self.scheduler.cancel()
                summary.status = STATUS_COMPLETE
            else:
                self.scheduler.schedule(self.continuation_delay_s)
                summary.status = STATUS_CONTINUED
            summary.queue_size = len(state.queue)
            summary.cursor = state.cursor
            self.state_repo.save(state)

        log.info(
            "Run %s: processed=%s skipped=%s failed=%s published=%s",
            summary.status,
            summary.processed,
            summary.skipped,
            summary.failed,
            len(summary.published),
        )
        return summary
