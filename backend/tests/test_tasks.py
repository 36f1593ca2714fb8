from datetime import UTC, datetime, timedelta

from gridrank.models.grid_scan import GridScan, ScanStatus
from gridrank.tasks import tasks
from gridrank.tasks.celery_app import celery_app


def test_grid_scan_tasks_route_to_grid_scan_queue():
    routes = celery_app.conf.task_routes
    assert routes["local.*"]["queue"] == "grid_scan_queue"
    assert celery_app.conf.beat_schedule["local-run-due-scans"]["task"] == "local.run_due_scans"


def test_run_grid_scan_task_completes_scan(db_session, make_campaign):
    from gridrank.services.engine import build_orchestrator

    scan = build_orchestrator(db_session).create_scan(make_campaign())
    payload = tasks.local_run_grid_scan.run(scan.id)
    assert payload["scan_id"] == scan.id
    assert payload["status"] == ScanStatus.COMPLETED.value
    assert payload["points_completed"] == 9
    assert payload["failed_points"] == 0


def test_run_due_scans_creates_and_runs_scans(db_session, make_campaign):
    past = datetime.now(UTC) - timedelta(hours=1)
    due = make_campaign(next_scan_at=past)
    invalid = make_campaign(next_scan_at=past, keywords=[])
    make_campaign(next_scan_at=datetime.now(UTC) + timedelta(days=1))

    payload = tasks.local_run_due_scans.run()

    assert payload["campaigns_due"] == 2
    assert [row["campaign_id"] for row in payload["skipped"]] == [invalid.id]
    assert payload["errors"] == []
    assert len(payload["scans"]) == 1
    assert payload["scans"][0]["status"] == ScanStatus.COMPLETED.value

    db_session.expire_all()
    scans = db_session.query(GridScan).filter(GridScan.campaign_id == due.id).all()
    assert len(scans) == 1
    refreshed = db_session.get(type(due), due.id)
    assert refreshed.next_scan_at is not None
    assert refreshed.last_scan_at is not None


def test_scan_tasks_close_the_loop_redis_client(db_session, make_campaign, monkeypatch):
    from gridrank.services.engine import build_orchestrator

    closed: list[bool] = []

    async def record_close() -> None:
        closed.append(True)

    monkeypatch.setattr(tasks, "close_loop_redis_client", record_close)
    scan = build_orchestrator(db_session).create_scan(make_campaign())

    tasks.local_run_grid_scan.run(scan.id)
    tasks.local_run_due_scans.run()

    assert closed == [True]


def test_response_cache_is_shared_between_orchestrators(db_session):
    from gridrank.services.engine import build_orchestrator, get_response_cache

    first = build_orchestrator(db_session)
    second = build_orchestrator(db_session)

    assert first.ranking_client.cache is second.ranking_client.cache
    assert first.ranking_client.cache is get_response_cache()
