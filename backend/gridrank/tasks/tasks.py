import asyncio
import logging
from typing import Awaitable, TypeVar

from gridrank.core.config import get_settings
from gridrank.db.redis_client import close_loop_redis_client
from gridrank.db.session import SessionLocal, session_scope
from gridrank.providers.errors import ScanValidationError
from gridrank.services import local_campaign_service
from gridrank.services.engine import build_orchestrator
from gridrank.services.scan_orchestrator import ScanOutcome
from gridrank.tasks.celery_app import celery_app

logger = logging.getLogger("gridrank.tasks")

T = TypeVar("T")


async def _run_and_close_redis(awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    finally:
        await close_loop_redis_client()


def _outcome_payload(outcome: ScanOutcome) -> dict:
    return {
        "scan_id": outcome.scan_id,
        "status": outcome.status,
        "points_completed": outcome.points_completed,
        "failed_points": outcome.failed_points,
        "api_calls_used": outcome.api_calls_used,
        "error_message": outcome.error_message,
    }


@celery_app.task(name="local.run_grid_scan")
def local_run_grid_scan(scan_id: str) -> dict:
    with session_scope(SessionLocal) as db:
        outcome = asyncio.run(_run_and_close_redis(build_orchestrator(db).run_scan(scan_id)))
        logger.info("Grid scan task finished", extra={"scan_id": scan_id})
        return _outcome_payload(outcome)


@celery_app.task(name="local.run_due_scans")
def local_run_due_scans(limit: int | None = None) -> dict:
    settings = get_settings()
    with session_scope(SessionLocal) as db:
        orchestrator = build_orchestrator(db, settings=settings)
        campaigns = local_campaign_service.get_campaigns_due_for_scan(db, limit=limit or settings.scan_due_batch_limit)
        scan_ids: list[str] = []
        skipped: list[dict] = []
        for campaign in campaigns:
            try:
                scan = orchestrator.create_scan(campaign)
            except ScanValidationError as exc:
                logger.warning("Skipping due campaign with invalid configuration", extra={"campaign_id": campaign.id})
                skipped.append({"campaign_id": campaign.id, "reason": str(exc)})
                continue
            scan_ids.append(scan.id)

        # One event loop for the batch so every scan shares the provider limiters.
        results = asyncio.run(_run_and_close_redis(orchestrator.run_scans(scan_ids))) if scan_ids else []
        scans: list[dict] = []
        errors: list[dict] = []
        for scan_id, result in zip(scan_ids, results):
            if isinstance(result, BaseException):
                logger.error("Grid scan raised", exc_info=result, extra={"scan_id": scan_id})
                errors.append({"scan_id": scan_id, "error": type(result).__name__})
                continue
            scans.append(_outcome_payload(result))
        return {
            "campaigns_due": len(campaigns),
            "scans": scans,
            "skipped": skipped,
            "errors": errors,
        }
