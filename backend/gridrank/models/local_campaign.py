from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gridrank.db.base import Base


class ScanCadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class CampaignStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class LocalCampaign(Base):
    __tablename__ = "local_campaigns"
    __table_args__ = (Index("ix_local_campaigns_status_next_scan_at", "status", "next_scan_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    gmb_cid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gmb_place_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(320), nullable=True)
    center_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    center_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    grid_size: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    grid_radius_miles: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    keywords_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    scan_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default=ScanCadence.WEEKLY.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CampaignStatus.ACTIVE.value)
    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    @property
    def keywords(self) -> list[str]:
        try:
            rows = json.loads(self.keywords_json or "[]")
        except json.JSONDecodeError:
            return []
        return [str(row) for row in rows if isinstance(row, str) and row.strip()]

    @keywords.setter
    def keywords(self, value: list[str]) -> None:
        self.keywords_json = json.dumps(list(value))
