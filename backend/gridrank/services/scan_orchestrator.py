from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from gridrank.core.config import Settings
from gridrank.core.metrics import grid_scan_duration_seconds, grid_scans_total
from gridrank.core.tracing import get_tracer
from gridrank.models.grid_scan import GridScan, ScanStatus
from gridrank.models.local_campaign import LocalCampaign
from gridrank.observability.events import (
    emit_cancel_requested,
    emit_point_failed,
    emit_scan_completed,
    emit_scan_created,
    emit_scan_failed,
    emit_scan_started,
)
from gridrank.providers.errors import ProviderError, ScanValidationError, human_error_message
from gridrank.providers.ranking_client import RankingClient, ScanUsage
from gridrank.services.grid_generator import GridPoint, generate_grid
from gridrank.services.local_campaign_service import next_scan_at, target_for_campaign, validate_campaign_for_scan
from gridrank.services.ranking_aggregator import aggregate_scan
from gridrank.services.scan_store import PointResultRecord, ScanCounters, ScanMetrics, ScanStateError, ScanStore

logger = logging.getLogger("gridrank.scan")

CANCELLED_MESSAGE = "Scan cancelled by operator request."
INTERNAL_ERROR_MESSAGE = "Scan failed due to an internal error. Please try again later."


@dataclass(frozen=True)
class OrchestratorOptions:
    search_type: str = "maps"
    cost_per_call: float = 0.005
    cancel_poll_seconds: float = 1.0
    skip_cache: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorOptions":
        return cls(
            cost_per_call=settings.scan_cost_per_call,
            cancel_poll_seconds=settings.scan_cancel_poll_seconds,
            skip_cache=settings.scan_skip_cache,
        )


@dataclass(frozen=True)
class ScanOutcome:
    scan_id: str
    status: str
    points_completed: int
    failed_points: int
    api_calls_used: int
    error_message: str | None = None


class _ScanProgress:
    def __init__(self, total: int, completed: int = 0, failed: int = 0) -> None:
        self.total = total
        self.completed = completed
        self.failed = failed

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, ((self.completed + self.failed) * 100) // self.total)

    def counters(self, usage: ScanUsage) -> ScanCounters:
        return ScanCounters(
            progress=self.percent,
            points_completed=self.completed,
            failed_points=self.failed,
            api_calls_used=usage.api_calls,
        )


class ScanOrchestrator:
    def __init__(
        self,
        store: ScanStore,
        ranking_client: RankingClient,
        *,
        options: OrchestratorOptions | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ranking_client = ranking_client
        self.options = options or OrchestratorOptions()
        self._now = now_fn
        self._monotonic = monotonic

    def create_scan(self, campaign: LocalCampaign) -> GridScan:
        validate_campaign_for_scan(campaign)
        total_points = campaign.grid_size * campaign.grid_size * len(campaign.keywords)
        scan = self.store.create_scan(campaign.id, total_points)
        emit_scan_created(scan_id=scan.id, campaign_id=campaign.id, total_points=total_points)
        return scan

    def request_cancel(self, scan_id: str) -> bool:
        accepted = self.store.request_cancel(scan_id)
        if accepted:
            emit_cancel_requested(scan_id=scan_id)
        return accepted

    async def run_scans(self, scan_ids: list[str]) -> list[ScanOutcome | BaseException]:
        return await asyncio.gather(*(self.run_scan(scan_id) for scan_id in scan_ids), return_exceptions=True)

    async def run_scan(self, scan_id: str) -> ScanOutcome:
        scan = self.store.get_scan(scan_id)
        if scan is None:
            raise ScanStateError(f"Grid scan {scan_id} not found")
        if scan.is_terminal:
            logger.warning("Grid scan already finished; skipping run", extra={"scan_id": scan_id})
            return self._outcome(scan)

        started = self._monotonic()
        usage = ScanUsage(api_calls=scan.api_calls_used or 0)
        progress = _ScanProgress(total=scan.total_points or 0)
        campaign = self.store.get_campaign(scan.campaign_id)
        try:
            if campaign is None:
                raise ScanValidationError("Campaign no longer exists.", field="campaign_id")
            validate_campaign_for_scan(campaign)
        except ScanValidationError as exc:
            return self._fail(scan, str(exc), "validation_error", progress, usage, started)

        try:
            with get_tracer().start_as_current_span("grid_scan.run", attributes={"scan_id": scan_id, "campaign_id": scan.campaign_id}):
                return await self._execute(scan, campaign, progress, usage, started)
        except Exception:
            logger.exception("Grid scan crashed", extra={"scan_id": scan_id, "campaign_id": scan.campaign_id})
            try:
                self.store.rollback()
                self._fail(scan, INTERNAL_ERROR_MESSAGE, "internal_error", progress, usage, started)
            except Exception:
                logger.exception("Could not mark crashed grid scan as failed", extra={"scan_id": scan_id})
            raise

    async def _execute(
        self,
        scan: GridScan,
        campaign: LocalCampaign,
        progress: _ScanProgress,
        usage: ScanUsage,
        started: float,
    ) -> ScanOutcome:
        scan_id = scan.id
        keywords = campaign.keywords
        points = generate_grid((campaign.center_lat, campaign.center_lng), campaign.grid_radius_miles, campaign.grid_size)
        pairs: list[tuple[str, GridPoint]] = [(keyword, point) for keyword in keywords for point in points]
        progress.total = len(pairs)

        already_saved: set[tuple[str, int, int]] = set()
        if scan.status == ScanStatus.SCANNING.value:
            already_saved = {(row.keyword, row.row, row.col) for row in self.store.get_scan_results(scan_id)}
        pending = deque(pair for pair in pairs if (pair[0], pair[1].row, pair[1].col) not in already_saved)
        progress.completed = len(pairs) - len(pending)

        self.store.start_scan(scan_id, self._now())
        emit_scan_started(scan_id=scan_id, campaign_id=campaign.id, grid_size=campaign.grid_size, keyword_count=len(keywords))

        if self.store.is_cancel_requested(scan_id):
            return self._fail(scan, CANCELLED_MESSAGE, "cancelled", progress, usage, started)

        target = target_for_campaign(campaign)
        endpoint_class = self.ranking_client.endpoint_class_for(self.options.search_type)
        fan_out = min(self.ranking_client.scheduler.max_concurrency(endpoint_class), len(pending))
        stop = asyncio.Event()
        fatal: list[ProviderError] = []
        cancelled = False
        last_poll = self._monotonic()

        def cancel_due() -> bool:
            nonlocal cancelled, last_poll
            now = self._monotonic()
            if now - last_poll < self.options.cancel_poll_seconds:
                return False
            last_poll = now
            if self.store.is_cancel_requested(scan_id):
                cancelled = True
                stop.set()
                return True
            return False

        tasks: list[asyncio.Task] = []

        def halt_others() -> None:
            # Workers still queued on the limiter must not dispatch after a fatal error.
            stop.set()
            current = asyncio.current_task()
            for task in tasks:
                if task is not current:
                    task.cancel()

        async def worker() -> None:
            while pending and not stop.is_set():
                if cancel_due():
                    return
                keyword, point = pending.popleft()
                try:
                    observation = await self.ranking_client.lookup_ranking(
                        point.coordinate,
                        keyword,
                        target,
                        search_type=self.options.search_type,
                        skip_cache=self.options.skip_cache,
                        usage=usage,
                    )
                except ProviderError as exc:
                    progress.failed += 1
                    emit_point_failed(scan_id=scan_id, keyword=keyword, row=point.row, col=point.col, reason_code=exc.reason_code)
                    if exc.scan_fatal:
                        fatal.append(exc)
                        halt_others()
                else:
                    try:
                        self.store.save_grid_point_results(
                            scan_id,
                            [
                                PointResultRecord(
                                    keyword=keyword,
                                    row=point.row,
                                    col=point.col,
                                    lat=point.lat,
                                    lng=point.lng,
                                    rank=observation.target_rank,
                                    top_entities=observation.top_entities,
                                    total_results=observation.total_results,
                                )
                            ],
                        )
                    except Exception:
                        halt_others()
                        raise
                    progress.completed += 1
                self.store.update_scan_progress(scan_id, progress.counters(usage))

        tasks.extend(asyncio.create_task(worker()) for _ in range(fan_out))
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for result in results:
            if isinstance(result, Exception):
                raise result

        if cancelled:
            return self._fail(scan, CANCELLED_MESSAGE, "cancelled", progress, usage, started)
        if fatal:
            return self._fail(scan, human_error_message(fatal[0]), fatal[0].reason_code, progress, usage, started)
        return self._complete(scan, campaign, progress, usage, started)

    def _complete(
        self,
        scan: GridScan,
        campaign: LocalCampaign,
        progress: _ScanProgress,
        usage: ScanUsage,
        started: float,
    ) -> ScanOutcome:
        previous = self.store.get_previous_completed_scan(campaign.id, scan.id)
        previous_stats = self.store.get_competitor_stats(previous.id) if previous is not None else None
        aggregation = aggregate_scan(
            self.store.get_scan_results(scan.id),
            previous_stats,
            previous_avg_rank=previous.avg_rank if previous is not None else None,
        )
        self.store.save_competitor_stats(scan.id, aggregation.competitor_stats)
        completed_at = self._now()
        self.store.complete_scan(
            scan.id,
            ScanMetrics(
                points_completed=progress.completed,
                failed_points=progress.failed,
                api_calls_used=usage.api_calls,
                estimated_cost=round(usage.api_calls * self.options.cost_per_call, 4),
                avg_rank=aggregation.avg_rank,
                avg_rank_change=aggregation.avg_rank_change,
                share_of_voice=aggregation.share_of_voice,
                top_competitor=aggregation.top_competitor,
            ),
            completed_at,
        )
        self.store.record_campaign_scan(campaign.id, completed_at, next_scan_at(campaign.scan_frequency, completed_at))
        grid_scans_total.labels(status=ScanStatus.COMPLETED.value).inc()
        grid_scan_duration_seconds.labels(status=ScanStatus.COMPLETED.value).observe(self._monotonic() - started)
        emit_scan_completed(
            scan_id=scan.id,
            campaign_id=campaign.id,
            points_completed=progress.completed,
            failed_points=progress.failed,
            api_calls_used=usage.api_calls,
            avg_rank=aggregation.avg_rank,
        )
        return ScanOutcome(
            scan_id=scan.id,
            status=ScanStatus.COMPLETED.value,
            points_completed=progress.completed,
            failed_points=progress.failed,
            api_calls_used=usage.api_calls,
        )

    def _fail(
        self,
        scan: GridScan,
        error_message: str,
        reason_code: str,
        progress: _ScanProgress,
        usage: ScanUsage,
        started: float,
    ) -> ScanOutcome:
        self.store.fail_scan(scan.id, error_message, progress.counters(usage), self._now())
        grid_scans_total.labels(status=ScanStatus.FAILED.value).inc()
        grid_scan_duration_seconds.labels(status=ScanStatus.FAILED.value).observe(self._monotonic() - started)
        emit_scan_failed(scan_id=scan.id, campaign_id=scan.campaign_id, reason_code=reason_code, error_message=error_message)
        return ScanOutcome(
            scan_id=scan.id,
            status=ScanStatus.FAILED.value,
            points_completed=progress.completed,
            failed_points=progress.failed,
            api_calls_used=usage.api_calls,
            error_message=error_message,
        )

    @staticmethod
    def _outcome(scan: GridScan) -> ScanOutcome:
        return ScanOutcome(
            scan_id=scan.id,
            status=scan.status,
            points_completed=scan.points_completed or 0,
            failed_points=scan.failed_points or 0,
            api_calls_used=scan.api_calls_used or 0,
            error_message=scan.error_message,
        )
