from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from gridrank.models.grid_scan import GridPointResult, GridScan
from gridrank.models.local_campaign import CampaignStatus, LocalCampaign, ScanCadence
from gridrank.providers.errors import ScanValidationError
from gridrank.providers.ranking_client import TargetEntity
from gridrank.services.grid_generator import validate_grid_config
from gridrank.services.ranking_aggregator import TOP3

_CADENCE_DAYS = {
    ScanCadence.DAILY.value: 1,
    ScanCadence.WEEKLY.value: 7,
    ScanCadence.BIWEEKLY.value: 14,
}


def validate_campaign_for_scan(campaign: LocalCampaign) -> None:
    if campaign.status != CampaignStatus.ACTIVE.value:
        raise ScanValidationError(f"Campaign is {campaign.status.lower()}; only active campaigns can be scanned.", field="status")
    if not (campaign.business_name or "").strip():
        raise ScanValidationError("Campaign has no business name to track.", field="business_name")
    if not campaign.keywords:
        raise ScanValidationError("Campaign has no keywords configured.", field="keywords")
    normalized = [keyword.strip().lower() for keyword in campaign.keywords]
    if len(set(normalized)) != len(normalized):
        raise ScanValidationError("Campaign keywords must be unique.", field="keywords")
    if campaign.center_lat is None or campaign.center_lng is None:
        raise ScanValidationError("Campaign is missing center coordinates.", field="center")
    validate_grid_config(campaign.center_lat, campaign.center_lng, campaign.grid_radius_miles, campaign.grid_size)


def target_for_campaign(campaign: LocalCampaign) -> TargetEntity:
    return TargetEntity(
        name=campaign.business_name,
        external_id=campaign.gmb_cid or None,
        domain=campaign.domain or None,
    )


def _add_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_scan_at(cadence: str, from_time: datetime) -> datetime:
    value = cadence.strip().lower()
    if value == ScanCadence.MONTHLY.value:
        return _add_month(from_time)
    days = _CADENCE_DAYS.get(value)
    if days is None:
        raise ValueError(f"Unsupported scan cadence: {cadence}")
    return from_time + timedelta(days=days)


def get_campaigns_due_for_scan(db: Session, *, limit: int = 20, now: datetime | None = None) -> list[LocalCampaign]:
    current = now or datetime.now(UTC)
    return (
        db.query(LocalCampaign)
        .filter(
            LocalCampaign.status == CampaignStatus.ACTIVE.value,
            LocalCampaign.next_scan_at.is_not(None),
            LocalCampaign.next_scan_at <= current,
        )
        .order_by(LocalCampaign.next_scan_at.asc(), LocalCampaign.id.asc())
        .limit(limit)
        .all()
    )


def scan_status(scan: GridScan) -> dict:
    payload: dict = {
        "status": scan.status,
        "progress": int(scan.progress or 0),
        "pointsCompleted": int(scan.points_completed or 0),
        "totalPoints": int(scan.total_points or 0),
    }
    if scan.error_message:
        payload["errorMessage"] = scan.error_message
    return payload


def _avg_rank(ranks: list[int]) -> float | None:
    return round(sum(ranks) / len(ranks), 2) if ranks else None


def _group_by_cell(points: list[dict]) -> list[dict]:
    cells: dict[tuple[int, int], dict] = {}
    for point in points:
        cell = cells.setdefault(
            (point["row"], point["col"]),
            {"row": point["row"], "col": point["col"], "lat": point["lat"], "lng": point["lng"], "keywords": []},
        )
        cell["keywords"].append({"keyword": point["keyword"], "rank": point["rank"], "top_rankings": point["top_rankings"]})
    for cell in cells.values():
        cell["avg_rank"] = _avg_rank([item["rank"] for item in cell["keywords"] if item["rank"] is not None])
    return [cells[key] for key in sorted(cells)]


def grid_view(scan: GridScan, campaign: LocalCampaign | None, rows: list[GridPointResult], keyword: str | None = None) -> dict:
    """Heatmap payload for one scan.

    With a keyword the points are the raw cells for that keyword; without one
    they are grouped per grid cell with every keyword's rank listed.
    """
    ranks = [row.rank for row in rows if row.rank is not None]
    top3 = sum(1 for rank in ranks if rank <= TOP3)
    points = [
        {
            "row": row.grid_row,
            "col": row.grid_col,
            "lat": row.lat,
            "lng": row.lng,
            "keyword": row.keyword,
            "rank": row.rank,
            "top_rankings": row.top_rankings,
        }
        for row in rows
    ]
    return {
        "scan_id": scan.id,
        "campaign_id": scan.campaign_id,
        "keyword": keyword or "all",
        "grid_size": campaign.grid_size if campaign is not None else None,
        "center_lat": campaign.center_lat if campaign is not None else None,
        "center_lng": campaign.center_lng if campaign is not None else None,
        "points": points if keyword else _group_by_cell(points),
        "aggregates": {
            "avg_rank": _avg_rank(ranks),
            "share_of_voice": round(top3 / len(rows) * 100, 2) if rows else 0.0,
            "times_in_top3": top3,
            "times_not_ranking": len(rows) - len(ranks),
            "total_points": len(rows),
        },
    }
