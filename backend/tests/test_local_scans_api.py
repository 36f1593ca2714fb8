from datetime import UTC, datetime, timedelta

from gridrank.models.grid_scan import GridScan, ScanStatus
from gridrank.services.engine import build_orchestrator


def test_trigger_scan_runs_grid_scan(client, make_campaign):
    campaign = make_campaign()
    response = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans")
    assert response.status_code == 202
    data = response.json()["data"]
    assert data["campaign_id"] == campaign.id
    assert data["job_id"]
    assert data["status"] == ScanStatus.COMPLETED.value
    assert data["totalPoints"] == 9
    assert data["pointsCompleted"] == 9
    assert data["progress"] == 100
    assert "errorMessage" not in data

    status = client.get(f"/api/v1/local/scans/{data['scan_id']}/status")
    assert status.status_code == 200
    assert status.json()["data"]["status"] == ScanStatus.COMPLETED.value


def test_scan_detail_includes_competitors_and_summary(client, make_campaign):
    campaign = make_campaign()
    scan_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]

    response = client.get(f"/api/v1/local/scans/{scan_id}")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["scan"]["id"] == scan_id
    assert data["scan"]["api_calls_used"] == 9
    assert len(data["competitors"]) >= 1
    assert all(0.0 <= row["share_of_voice"] <= 100.0 for row in data["competitors"])
    assert data["summary"]["target_position"] in {"dominant", "strong", "moderate", "weak", "not_ranking"}

    keywords = client.get(f"/api/v1/local/scans/{scan_id}/keywords")
    assert keywords.status_code == 200
    rows = keywords.json()["data"]["items"]
    assert [row["keyword"] for row in rows] == ["dentist"]
    assert rows[0]["observations"] == 9


def test_trigger_scan_for_missing_campaign_returns_404(client):
    response = client.post("/api/v1/local/campaigns/does-not-exist/scans")
    assert response.status_code == 404
    body = response.json()
    assert body["data"] is None
    assert body["error"]["code"] == "http_404"


def test_trigger_scan_rejects_invalid_campaign(client, make_campaign):
    campaign = make_campaign(keywords=[])
    response = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans")
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["message"] == "Campaign has no keywords configured."
    assert error["details"]["field"] == "keywords"


def test_cancel_pending_scan(client, db_session, make_campaign):
    scan = build_orchestrator(db_session).create_scan(make_campaign())
    response = client.post(f"/api/v1/local/scans/{scan.id}/cancel")
    assert response.status_code == 202
    assert response.json()["data"]["cancel_requested"] is True
    db_session.refresh(scan)
    assert scan.cancel_requested is True


def test_cancel_finished_scan_conflicts(client, make_campaign):
    campaign = make_campaign()
    scan_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]
    response = client.post(f"/api/v1/local/scans/{scan_id}/cancel")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "http_409"


def test_unknown_scan_returns_404(client):
    assert client.get("/api/v1/local/scans/missing/status").status_code == 404
    assert client.get("/api/v1/local/scans/missing").status_code == 404


def test_campaign_scan_history_is_newest_first(client, db_session, make_campaign):
    campaign = make_campaign()
    first_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]
    second_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]
    first = db_session.get(GridScan, first_id)
    first.created_at = datetime.now(UTC) - timedelta(days=7)
    db_session.commit()

    response = client.get(f"/api/v1/local/campaigns/{campaign.id}/scans")
    assert response.status_code == 200
    data = response.json()["data"]
    assert [row["id"] for row in data["items"]] == [second_id, first_id]
    assert data["items"][0]["status"] == ScanStatus.COMPLETED.value
    assert data["pagination"] == {"limit": 20, "offset": 0, "has_more": False}

    page = client.get(f"/api/v1/local/campaigns/{campaign.id}/scans", params={"limit": 1, "offset": 1}).json()["data"]
    assert [row["id"] for row in page["items"]] == [first_id]
    assert page["pagination"]["has_more"] is True


def test_campaign_scan_history_validates_input(client, make_campaign):
    assert client.get("/api/v1/local/campaigns/missing/scans").status_code == 404
    campaign = make_campaign()
    response = client.get(f"/api/v1/local/campaigns/{campaign.id}/scans", params={"limit": 0})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_scan_grid_for_one_keyword_lists_each_cell(client, make_campaign):
    campaign = make_campaign(keywords=["dentist", "orthodontist"])
    scan_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]

    response = client.get(f"/api/v1/local/scans/{scan_id}/grid", params={"keyword": "dentist"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["keyword"] == "dentist"
    assert data["grid_size"] == 3
    assert (data["center_lat"], data["center_lng"]) == (40.0, -75.0)
    assert [(point["row"], point["col"]) for point in data["points"]] == [(row, col) for row in range(3) for col in range(3)]
    assert {point["keyword"] for point in data["points"]} == {"dentist"}
    aggregates = data["aggregates"]
    assert aggregates["total_points"] == 9
    assert aggregates["times_in_top3"] + aggregates["times_not_ranking"] <= 9
    assert 0.0 <= aggregates["share_of_voice"] <= 100.0


def test_scan_grid_without_keyword_groups_keywords_per_cell(client, make_campaign):
    campaign = make_campaign(keywords=["dentist", "orthodontist"])
    scan_id = client.post(f"/api/v1/local/campaigns/{campaign.id}/scans").json()["data"]["scan_id"]

    data = client.get(f"/api/v1/local/scans/{scan_id}/grid").json()["data"]
    assert data["keyword"] == "all"
    assert len(data["points"]) == 9
    for cell in data["points"]:
        assert [item["keyword"] for item in cell["keywords"]] == ["dentist", "orthodontist"]
    assert data["aggregates"]["total_points"] == 18

    empty = client.get(f"/api/v1/local/scans/{scan_id}/grid", params={"keyword": "plumber"}).json()["data"]
    assert empty["points"] == []
    assert empty["aggregates"] == {
        "avg_rank": None,
        "share_of_voice": 0.0,
        "times_in_top3": 0,
        "times_not_ranking": 0,
        "total_points": 0,
    }
    assert client.get("/api/v1/local/scans/missing/grid").status_code == 404
