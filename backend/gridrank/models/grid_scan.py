from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gridrank.db.base import Base


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    SCANNING = "SCANNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_SCAN_STATUSES = frozenset({ScanStatus.COMPLETED.value, ScanStatus.FAILED.value})


class GridScan(Base):
    __tablename__ = "grid_scans"
    __table_args__ = (Index("ix_grid_scans_campaign_status_completed_at", "campaign_id", "status", "completed_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("local_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ScanStatus.PENDING.value, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_rank: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_rank_change: Mapped[float | None] = mapped_column(Float, nullable=True)
    share_of_voice: Mapped[float | None] = mapped_column(Float, nullable=True)
    top_competitor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SCAN_STATUSES


class GridPointResult(Base):
    __tablename__ = "grid_point_results"
    __table_args__ = (
        UniqueConstraint("scan_id", "keyword", "grid_row", "grid_col", name="uq_grid_point_results_scan_keyword_cell"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    scan_id: Mapped[str] = mapped_column(String(36), ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False, index=True)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    grid_row: Mapped[int] = mapped_column(Integer, nullable=False)
    grid_col: Mapped[int] = mapped_column(Integer, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    top_rankings_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    total_results: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    @property
    def top_rankings(self) -> list[dict]:
        try:
            rows = json.loads(self.top_rankings_json or "[]")
        except json.JSONDecodeError:
            return []
        return [row for row in rows if isinstance(row, dict)]


class CompetitorStat(Base):
    __tablename__ = "competitor_stats"
    __table_args__ = (UniqueConstraint("scan_id", "identity_key", name="uq_competitor_stats_scan_identity"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    scan_id: Mapped[str] = mapped_column(String(36), ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False, index=True)
    identity_key: Mapped[str] = mapped_column(String(320), nullable=False)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    review_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    avg_rank: Mapped[float] = mapped_column(Float, nullable=False)
    times_in_top3: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top10: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top20: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    appearances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    share_of_voice: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prev_avg_rank: Mapped[float | None] = mapped_column(Float, nullable=True)
    rank_change: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_target: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
