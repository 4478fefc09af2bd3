"""HTTP and WebSocket surface: commands, read model, error mapping."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from config import Settings
from errors import PersistenceError
from conftest import FakeClock
from main import create_app


@pytest.fixture
def api_clock():
    return FakeClock()


@pytest.fixture
def client(api_clock):
    settings = Settings(database_url="sqlite://", log_level="WARNING")
    app = create_app(settings, clock=api_clock)
    with TestClient(app) as test_client:
        yield test_client


def _create(client, token="abcdef-device-token", **overrides):
    body = {"latitude": 4.711, "longitude": -74.0721, "category": "vehicular-control", "token": token}
    body.update(overrides)
    response = client.post("/reports", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_root_health_and_categories(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert "online" in client.get("/").json()["message"]
    categories = client.get("/categories").json()
    assert {"value": "sobriety-check", "label": "Alcoholemia"} in categories
    assert len(categories) == 5


def test_minted_tokens_are_distinct(client) -> None:
    first = client.post("/tokens").json()["token"]
    second = client.post("/tokens").json()["token"]
    assert first and second and first != second


def test_create_report_hides_author_token(client) -> None:
    report = _create(client, description="Piden SOAT")
    assert report["author"] == "abcdef"
    assert report["category_label"] == "Control vehicular"
    assert report["confirmations"] == 0
    assert report["heat"] == "normal"
    assert "abcdef-device-token" not in str(report)
    listed = client.get("/reports").json()
    assert [r["id"] for r in listed] == [report["id"]]


def test_create_defaults_to_unspecified_category(client) -> None:
    report = _create(client, category=None)
    assert report["category"] == "unspecified"


def test_validation_errors_map_to_422(client) -> None:
    response = client.post(
        "/reports",
        json={"latitude": 123.0, "longitude": 0.0, "token": "abcdef-device-token"},
    )
    assert response.status_code == 422
    assert "Latitude" in response.json()["detail"]
    assert client.get("/reports").json() == []


def test_confirm_flow_and_duplicate_noop(client) -> None:
    report = _create(client)
    url = f"/reports/{report['id']}/confirm"
    first = client.post(url, json={"token": "voter-one"}).json()
    assert first["applied"] is True
    assert first["report"]["confirmations"] == 1
    assert first["report"]["voted"] is True

    again = client.post(url, json={"token": "voter-one"}).json()
    assert again["applied"] is False
    assert again["report"]["confirmations"] == 1

    client.post(url, json={"token": "voter-two"})
    third = client.post(url, json={"token": "voter-three"}).json()
    assert third["report"]["heat"] == "corroborated"
    assert client.get("/reports/summary").json() == {"active": 1, "corroborated": 1}

    seen_by_other = client.get(f"/reports/{report['id']}", params={"token": "someone-else"}).json()
    assert seen_by_other["voted"] is False
    assert "voter-one" not in str(seen_by_other)


def test_comments_endpoint(client) -> None:
    report = _create(client)
    url = f"/reports/{report['id']}/comments"
    response = client.post(url, json={"text": "hay 3 agentes", "token": "commenter-token"})
    assert response.status_code == 201
    comments = response.json()["comments"]
    assert comments == [
        {"text": "hay 3 agentes", "author": "commen", "timestamp": comments[0]["timestamp"]}
    ]

    rejected = client.post(url, json={"text": "x" * 121, "token": "commenter-token"})
    assert rejected.status_code == 422
    assert len(client.get(f"/reports/{report['id']}").json()["comments"]) == 1


def test_unknown_and_expired_reports_are_404(client, api_clock) -> None:
    assert client.get("/reports/does-not-exist").status_code == 404
    report = _create(client)
    api_clock.advance(hours=2, minutes=1)
    assert client.get(f"/reports/{report['id']}").status_code == 404
    confirm = client.post(f"/reports/{report['id']}/confirm", json={"token": "late-voter"})
    assert confirm.status_code == 404
    assert client.get("/reports").json() == []


def test_persistence_errors_map_to_503(client) -> None:
    manager = client.app.state.manager

    def broken(*args):
        raise PersistenceError("store unreachable")

    manager.store.query_range = broken
    response = client.get("/reports")
    assert response.status_code == 503
    assert response.json()["detail"] == "store unreachable"


def test_live_feed_pushes_initial_view_and_changes(client, api_clock) -> None:
    existing = _create(client)
    with client.websocket_connect("/ws/reports?token=voter-one") as websocket:
        initial = websocket.receive_json()
        assert initial["active"] == 1
        assert initial["reports"][0]["id"] == existing["id"]

        client.post(f"/reports/{existing['id']}/confirm", json={"token": "voter-one"})
        update = websocket.receive_json()
        assert update["reports"][0]["confirmations"] == 1
        assert update["reports"][0]["voted"] is True

        api_clock.advance(minutes=1)
        created = _create(client, token="second-device")
        latest = websocket.receive_json()
        assert latest["active"] == 2
        assert latest["reports"][0]["id"] == created["id"]


def test_voted_flag_ignores_surrounding_whitespace_in_token(client) -> None:
    report = _create(client)
    url = f"/reports/{report['id']}/confirm"
    first = client.post(url, json={"token": " voter-one "}).json()
    assert first["applied"] is True
    assert first["report"]["voted"] is True

    again = client.post(url, json={"token": "voter-one"}).json()
    assert again["applied"] is False
    assert again["report"]["voted"] is True

    listed = client.get("/reports", params={"token": "voter-one\t"}).json()
    assert listed[0]["voted"] is True
