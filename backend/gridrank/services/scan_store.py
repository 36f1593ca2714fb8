from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy.orm import Session

from gridrank.models.grid_scan import CompetitorStat, GridPointResult, GridScan, ScanStatus
from gridrank.models.local_campaign import LocalCampaign
from gridrank.providers.ranking_client import RankedEntity
from gridrank.services.ranking_aggregator import CompetitorSummary, PointObservation


@dataclass(frozen=True)
class PointResultRecord:
    keyword: str
    row: int
    col: int
    lat: float
    lng: float
    rank: int | None
    top_entities: list[RankedEntity] = field(default_factory=list)
    total_results: int = 0


@dataclass(frozen=True)
class ScanCounters:
    progress: int
    points_completed: int
    failed_points: int
    api_calls_used: int


@dataclass(frozen=True)
class ScanMetrics:
    points_completed: int
    failed_points: int
    api_calls_used: int
    estimated_cost: float
    avg_rank: float | None
    avg_rank_change: float | None
    share_of_voice: float
    top_competitor: str | None


class ScanStore(Protocol):
    def get_campaign(self, campaign_id: str) -> LocalCampaign | None: ...

    def get_scan(self, scan_id: str) -> GridScan | None: ...

    def create_scan(self, campaign_id: str, total_points: int) -> GridScan: ...

    def start_scan(self, scan_id: str, started_at: datetime) -> None: ...

    def update_scan_progress(self, scan_id: str, counters: ScanCounters) -> None: ...

    def save_grid_point_results(self, scan_id: str, results: list[PointResultRecord]) -> None: ...

    def save_competitor_stats(self, scan_id: str, stats: list[CompetitorSummary]) -> None: ...

    def complete_scan(self, scan_id: str, metrics: ScanMetrics, completed_at: datetime) -> None: ...

    def fail_scan(self, scan_id: str, error_message: str, counters: ScanCounters, completed_at: datetime) -> None: ...

    def get_previous_completed_scan(self, campaign_id: str, excluding_scan_id: str) -> GridScan | None: ...

    def get_competitor_stats(self, scan_id: str) -> list[CompetitorStat]: ...

    def get_scan_results(self, scan_id: str) -> list[PointObservation]: ...

    def is_cancel_requested(self, scan_id: str) -> bool: ...

    def request_cancel(self, scan_id: str) -> bool: ...

    def record_campaign_scan(self, campaign_id: str, scanned_at: datetime, next_scan_at: datetime | None) -> None: ...

    def rollback(self) -> None: ...


class ScanStateError(RuntimeError):
    pass


class SqlScanStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _scan_or_raise(self, scan_id: str) -> GridScan:
        scan = self.db.get(GridScan, scan_id)
        if scan is None:
            raise ScanStateError(f"Grid scan {scan_id} not found")
        return scan

    def _mutable_scan(self, scan_id: str) -> GridScan:
        scan = self._scan_or_raise(scan_id)
        if scan.is_terminal:
            raise ScanStateError(f"Grid scan {scan_id} is already {scan.status}")
        return scan

    def rollback(self) -> None:
        self.db.rollback()

    def get_campaign(self, campaign_id: str) -> LocalCampaign | None:
        return self.db.get(LocalCampaign, campaign_id)

    def get_scan(self, scan_id: str) -> GridScan | None:
        scan = self.db.get(GridScan, scan_id)
        if scan is not None:
            self.db.refresh(scan)
        return scan

    def create_scan(self, campaign_id: str, total_points: int) -> GridScan:
        scan = GridScan(
            campaign_id=campaign_id,
            status=ScanStatus.PENDING.value,
            progress=0,
            points_completed=0,
            total_points=total_points,
            failed_points=0,
            api_calls_used=0,
            estimated_cost=0.0,
            cancel_requested=False,
        )
        self.db.add(scan)
        self.db.commit()
        self.db.refresh(scan)
        return scan

    def start_scan(self, scan_id: str, started_at: datetime) -> None:
        scan = self._mutable_scan(scan_id)
        scan.status = ScanStatus.SCANNING.value
        if scan.started_at is None:
            scan.started_at = started_at
        self.db.commit()

    def update_scan_progress(self, scan_id: str, counters: ScanCounters) -> None:
        scan = self._mutable_scan(scan_id)
        scan.progress = max(scan.progress or 0, counters.progress)
        scan.points_completed = counters.points_completed
        scan.failed_points = counters.failed_points
        scan.api_calls_used = counters.api_calls_used
        self.db.commit()

    def save_grid_point_results(self, scan_id: str, results: list[PointResultRecord]) -> None:
        self._mutable_scan(scan_id)
        for result in results:
            self.db.add(
                GridPointResult(
                    scan_id=scan_id,
                    keyword=result.keyword,
                    grid_row=result.row,
                    grid_col=result.col,
                    lat=result.lat,
                    lng=result.lng,
                    rank=result.rank,
                    top_rankings_json=json.dumps([entity.to_dict() for entity in result.top_entities]),
                    total_results=result.total_results,
                )
            )
        self.db.commit()

    def save_competitor_stats(self, scan_id: str, stats: list[CompetitorSummary]) -> None:
        self._mutable_scan(scan_id)
        for stat in stats:
            self.db.add(
                CompetitorStat(
                    scan_id=scan_id,
                    identity_key=stat.identity_key,
                    business_name=stat.business_name[:255],
                    external_id=stat.external_id,
                    rating=stat.rating,
                    review_count=stat.review_count,
                    avg_rank=stat.avg_rank,
                    times_in_top3=stat.times_in_top3,
                    times_in_top10=stat.times_in_top10,
                    times_in_top20=stat.times_in_top20,
                    appearances=stat.appearances,
                    share_of_voice=stat.share_of_voice,
                    prev_avg_rank=stat.prev_avg_rank,
                    rank_change=stat.rank_change,
                    is_target=stat.is_target,
                )
            )
        self.db.commit()

    def complete_scan(self, scan_id: str, metrics: ScanMetrics, completed_at: datetime) -> None:
        scan = self._mutable_scan(scan_id)
        scan.status = ScanStatus.COMPLETED.value
        scan.progress = 100
        scan.points_completed = metrics.points_completed
        scan.failed_points = metrics.failed_points
        scan.api_calls_used = metrics.api_calls_used
        scan.estimated_cost = metrics.estimated_cost
        scan.avg_rank = metrics.avg_rank
        scan.avg_rank_change = metrics.avg_rank_change
        scan.share_of_voice = metrics.share_of_voice
        scan.top_competitor = metrics.top_competitor[:255] if metrics.top_competitor else None
        scan.error_message = None
        scan.completed_at = completed_at
        self.db.commit()

    def fail_scan(self, scan_id: str, error_message: str, counters: ScanCounters, completed_at: datetime) -> None:
        scan = self._mutable_scan(scan_id)
        scan.status = ScanStatus.FAILED.value
        scan.progress = max(scan.progress or 0, counters.progress)
        scan.points_completed = counters.points_completed
        scan.failed_points = counters.failed_points
        scan.api_calls_used = counters.api_calls_used
        scan.error_message = error_message
        scan.completed_at = completed_at
        self.db.commit()

    def get_previous_completed_scan(self, campaign_id: str, excluding_scan_id: str) -> GridScan | None:
        return (
            self.db.query(GridScan)
            .filter(
                GridScan.campaign_id == campaign_id,
                GridScan.status == ScanStatus.COMPLETED.value,
                GridScan.id != excluding_scan_id,
            )
            .order_by(GridScan.completed_at.desc(), GridScan.created_at.desc())
            .first()
        )

    def get_competitor_stats(self, scan_id: str) -> list[CompetitorStat]:
        return (
            self.db.query(CompetitorStat)
            .filter(CompetitorStat.scan_id == scan_id)
            .order_by(CompetitorStat.avg_rank.asc(), CompetitorStat.share_of_voice.desc(), CompetitorStat.business_name.asc())
            .all()
        )

    def list_campaign_scans(self, campaign_id: str, *, limit: int = 20, offset: int = 0) -> list[GridScan]:
        return (
            self.db.query(GridScan)
            .filter(GridScan.campaign_id == campaign_id)
            .order_by(GridScan.created_at.desc(), GridScan.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_grid_points(self, scan_id: str, keyword: str | None = None) -> list[GridPointResult]:
        query = self.db.query(GridPointResult).filter(GridPointResult.scan_id == scan_id)
        if keyword is not None:
            query = query.filter(GridPointResult.keyword == keyword)
        return query.order_by(GridPointResult.keyword.asc(), GridPointResult.grid_row.asc(), GridPointResult.grid_col.asc()).all()

    def get_scan_results(self, scan_id: str) -> list[PointObservation]:
        rows = (
            self.db.query(GridPointResult)
            .filter(GridPointResult.scan_id == scan_id)
            .order_by(GridPointResult.keyword.asc(), GridPointResult.grid_row.asc(), GridPointResult.grid_col.asc())
            .all()
        )
        return [
            PointObservation(
                keyword=row.keyword,
                row=row.grid_row,
                col=row.grid_col,
                target_rank=row.rank,
                top_entities=[RankedEntity.from_dict(item) for item in row.top_rankings if "rank" in item],
            )
            for row in rows
        ]

    def is_cancel_requested(self, scan_id: str) -> bool:
        scan = self.db.get(GridScan, scan_id)
        if scan is None:
            return False
        self.db.refresh(scan, attribute_names=["cancel_requested"])
        return bool(scan.cancel_requested)

    def request_cancel(self, scan_id: str) -> bool:
        scan = self._scan_or_raise(scan_id)
        if scan.is_terminal:
            return False
        scan.cancel_requested = True
        self.db.commit()
        return True

    def record_campaign_scan(self, campaign_id: str, scanned_at: datetime, next_scan_at: datetime | None) -> None:
        campaign = self.db.get(LocalCampaign, campaign_id)
        if campaign is None:
            return
        campaign.last_scan_at = scanned_at
        campaign.next_scan_at = next_scan_at
        campaign.updated_at = datetime.now(UTC)
        self.db.commit()
