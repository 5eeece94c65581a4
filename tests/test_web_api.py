import json
from datetime import datetime

import pytest

import irrigator


@pytest.fixture
def api(monkeypatch, tmp_path):
    monkeypatch.setattr(irrigator, "CONFIG_PATH", str(tmp_path / "config.json"))
    cfg = json.loads(json.dumps(irrigator.DEFAULT_CONFIG))
    clock = irrigator.ManualClock(datetime(2024, 5, 1, 21, 30))
    engine, notifications = irrigator.build_engine(cfg, clock=clock)
    app = irrigator.build_app(cfg, engine, notifications=notifications)
    return app.test_client(), cfg, tmp_path


def test_fields_listing_uses_demo_farm(api):
    client, cfg, _ = api
    resp = client.get("/api/fields")
    assert resp.status_code == 200
    fields = resp.get_json()
    assert [f["name"] for f in fields] == ["North Field", "South Field", "East Garden"]
    assert fields[1]["valve_mode"] == "auto"
    assert fields[0]["governed_by"] is None


def test_manual_valve_and_logs(api):
    client, cfg, _ = api
    resp = client.post("/api/fields/1/valve", json={"mode": "on"})
    assert resp.status_code == 200
    assert resp.get_json()["valve_mode"] == "on"

    logs = client.get("/api/fields/1/watering-logs").get_json()
    assert len(logs) == 1
    assert logs[0]["method"] == "manual"
    assert logs[0]["duration"] == 30


def test_bad_requests(api):
    client, cfg, _ = api
    assert client.post("/api/fields/1/valve", json={"mode": "flood"}).status_code == 400
    resp = client.post("/api/fields/99/valve", json={"mode": "on"})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Field with ID 99 not found"
    resp = client.post("/api/schedule", json={"start": "06:00", "end": "06:00"})
    assert resp.status_code == 400
    assert client.post("/api/fields/1/schedule", json={"start": "6"}).status_code == 400


def test_global_schedule_blocks_manual_control(api):
    client, cfg, tmp_path = api
    resp = client.post("/api/schedule", json={"start": "21:00", "end": "23:00"})
    assert resp.status_code == 200
    body = resp.get_json()
    engaged = [e for e in body["events"] if e["kind"] == "schedule_engaged"]
    assert len(engaged) == 3

    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["global_schedule"] == {"start": "21:00", "end": "23:00", "enabled": True}

    resp = client.post("/api/fields/1/valve", json={"mode": "off"})
    assert resp.status_code == 409
    assert "global schedule 21:00-23:00" in resp.get_json()["error"]

    status = client.get("/api/status").get_json()
    assert status["global_schedule_active"] is True
    assert status["fields_on_global_schedule"] == 3
    assert status["server_time"] == "2024-05-01 21:30:00"

    resp = client.delete("/api/schedule")
    assert resp.status_code == 200
    assert {e["kind"] for e in resp.get_json()["events"]} == {"schedule_disengaged"}
    assert cfg["global_schedule"]["enabled"] is False
    assert client.post("/api/fields/1/valve", json={"mode": "off"}).status_code == 200


def test_field_schedule_routes(api):
    client, cfg, _ = api
    resp = client.post("/api/fields/3/schedule", json={"start": "21:00", "end": "21:45"})
    assert resp.status_code == 200
    assert resp.get_json()["schedule"]["end"] == "21:45"
    field = client.get("/api/fields/3").get_json()
    assert field["governed_by"] == "field"
    assert field["schedule_active"] is True

    resp = client.delete("/api/fields/3/schedule")
    assert [e["kind"] for e in resp.get_json()["events"]] == ["schedule_disengaged"]
    assert client.get("/api/fields/3").get_json()["governed_by"] is None


def test_notifications_feed(api):
    client, cfg, _ = api
    client.post("/api/fields/1/valve", json={"mode": "auto"})
    feed = client.get("/api/notifications").get_json()
    assert feed["unread"] == 1
    note_id = feed["notifications"][0]["id"]

    assert client.post("/api/notifications/read", json={"id": "nope"}).status_code == 404
    assert client.post("/api/notifications/read", json={"id": note_id}).get_json() == {"unread": 0}
    assert client.delete(f"/api/notifications/{note_id}").status_code == 200
    assert client.delete(f"/api/notifications/{note_id}").status_code == 404


def test_tick_route(api):
    client, cfg, _ = api
    assert client.post("/api/tick").get_json() == {"events": []}
