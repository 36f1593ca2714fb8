from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from kombu.exceptions import KombuError
from sqlalchemy.orm import Session

from gridrank.api.response import envelope
from gridrank.db.session import get_db
from gridrank.models.grid_scan import GridScan, ScanStatus
from gridrank.models.local_campaign import LocalCampaign
from gridrank.providers.errors import ScanValidationError
from gridrank.schemas.grid_scan import CompetitiveSummaryOut, CompetitorStatOut, GridScanOut, GridViewOut, KeywordSummaryOut
from gridrank.services import local_campaign_service, ranking_aggregator
from gridrank.services.engine import build_orchestrator
from gridrank.services.scan_store import SqlScanStore
from gridrank.tasks.tasks import local_run_grid_scan

router = APIRouter(prefix="/local", tags=["local"])


def _scan_or_404(db: Session, scan_id: str) -> GridScan:
    scan = db.get(GridScan, scan_id)
    if scan is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Grid scan not found")
    return scan


@router.post("/campaigns/{campaign_id}/scans", status_code=status.HTTP_202_ACCEPTED)
def trigger_scan(request: Request, campaign_id: str, db: Session = Depends(get_db)) -> dict:
    campaign = db.get(LocalCampaign, campaign_id)
    if campaign is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    orchestrator = build_orchestrator(db)
    try:
        scan = orchestrator.create_scan(campaign)
    except ScanValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "field": exc.field},
        ) from exc
    try:
        task = local_run_grid_scan.delay(scan.id)
    except KombuError:
        task = None
    db.refresh(scan)
    return envelope(
        request,
        {
            "scan_id": scan.id,
            "campaign_id": campaign.id,
            "job_id": task.id if task is not None else None,
            **local_campaign_service.scan_status(scan),
        },
    )


@router.get("/campaigns/{campaign_id}/scans")
def list_campaign_scans(
    request: Request,
    campaign_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    if db.get(LocalCampaign, campaign_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    scans = SqlScanStore(db).list_campaign_scans(campaign_id, limit=limit, offset=offset)
    return envelope(
        request,
        {
            "campaign_id": campaign_id,
            "items": [GridScanOut.model_validate(scan).model_dump(mode="json") for scan in scans],
            "pagination": {"limit": limit, "offset": offset, "has_more": len(scans) == limit},
        },
    )


@router.get("/scans/{scan_id}/status")
def get_scan_status(request: Request, scan_id: str, db: Session = Depends(get_db)) -> dict:
    scan = _scan_or_404(db, scan_id)
    return envelope(request, {"scan_id": scan.id, **local_campaign_service.scan_status(scan)})


@router.get("/scans/{scan_id}")
def get_scan(request: Request, scan_id: str, db: Session = Depends(get_db)) -> dict:
    scan = _scan_or_404(db, scan_id)
    store = SqlScanStore(db)
    competitors = [CompetitorStatOut.model_validate(row).model_dump() for row in store.get_competitor_stats(scan.id)]
    summary = None
    if scan.status == ScanStatus.COMPLETED.value:
        aggregation = ranking_aggregator.aggregate_scan(store.get_scan_results(scan.id))
        summary = CompetitiveSummaryOut.model_validate(ranking_aggregator.competitive_summary(aggregation)).model_dump()
    return envelope(
        request,
        {
            "scan": GridScanOut.model_validate(scan).model_dump(mode="json"),
            "competitors": competitors,
            "summary": summary,
        },
    )


@router.get("/scans/{scan_id}/keywords")
def get_scan_keywords(request: Request, scan_id: str, db: Session = Depends(get_db)) -> dict:
    scan = _scan_or_404(db, scan_id)
    rows = ranking_aggregator.summarize_keywords(SqlScanStore(db).get_scan_results(scan.id))
    return envelope(
        request,
        {
            "scan_id": scan.id,
            "items": [KeywordSummaryOut.model_validate(row).model_dump() for row in rows],
        },
    )


@router.post("/scans/{scan_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
def cancel_scan(request: Request, scan_id: str, db: Session = Depends(get_db)) -> dict:
    scan = _scan_or_404(db, scan_id)
    if scan.is_terminal:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Grid scan is already {scan.status}")
    accepted = build_orchestrator(db).request_cancel(scan.id)
    return envelope(request, {"scan_id": scan.id, "cancel_requested": accepted})


@router.get("/scans/{scan_id}/grid")
def get_scan_grid(request: Request, scan_id: str, keyword: str | None = None, db: Session = Depends(get_db)) -> dict:
    scan = _scan_or_404(db, scan_id)
    keyword = (keyword or "").strip() or None
    rows = SqlScanStore(db).get_grid_points(scan.id, keyword)
    view = local_campaign_service.grid_view(scan, db.get(LocalCampaign, scan.campaign_id), rows, keyword)
    return envelope(request, GridViewOut.model_validate(view).model_dump())
