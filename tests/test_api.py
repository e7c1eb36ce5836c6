import pytest
from unittest.mock import patch

from quickalert.core.models import GeoPoint

API_KEY = {"X-API-Key": "test-key"}


def as_user(user_id="citizen-1", role="user"):
    return {**API_KEY, "X-User-Id": user_id, "X-User-Role": role}


REPORT_BODY = {
    "category": "fire",
    "title": "Smoke from a building",
    "description": "Thick smoke on the third floor",
    "lat": 32.0853,
    "lng": 34.7818,
}
VOTER_POSITION = {"lat": 32.0943, "lng": 34.7818}  # ~1 km north of the report

ALERT_BODY = {
    "title": "Gas leak",
    "description": "Avoid the area",
    "severity": "high",
    "lat": 32.0853,
    "lng": 34.7818,
    "radius": 1000,
}


def submit_report(client):
    response = client.post("/api/reports", json=REPORT_BODY, headers=as_user())
    assert response.status_code == 201
    return response.json()["data"]


def create_alert(client, **overrides):
    response = client.post(
        "/api/alerts", json={**ALERT_BODY, **overrides}, headers=as_user("responder-1", "responder")
    )
    assert response.status_code == 201
    return response.json()["data"]


def test_root_endpoint(client):
    """
    Tests that the root endpoint is accessible.
    """
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Welcome to the QuickAlert Proximity Service"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "connections": 0, "alerts": 0}


@patch("quickalert.utils.security.API_KEY", "test-key")
def test_api_requires_api_key(client):
    """
    Tests that the API returns a 401 Unauthorized error when no API key is provided.
    """
    response = client.get("/api/alerts/nearby", params={"lat": 32.0, "lng": 34.8})
    assert response.status_code == 401
    assert "API key is missing" in response.text


@patch("quickalert.utils.security.API_KEY", "test-key")
def test_api_rejects_invalid_api_key(client):
    response = client.get(
        "/api/alerts/nearby", params={"lat": 32.0, "lng": 34.8}, headers={"X-API-Key": "invalid-key"}
    )
    assert response.status_code == 401
    assert "Invalid API key" in response.text


def test_report_submission_requires_identity(client):
    response = client.post("/api/reports", json=REPORT_BODY, headers=API_KEY)
    assert response.status_code == 401


def test_submit_and_get_report(client):
    report = submit_report(client)
    assert report["status"] == "pending"
    assert report["verificationStatus"] == "unverified"

    response = client.get(f"/api/reports/{report['id']}", headers=as_user())
    assert response.status_code == 200
    assert response.json()["data"]["userVote"] is None


def test_invalid_category_maps_to_400(client):
    response = client.post(
        "/api/reports", json={**REPORT_BODY, "category": "alien_invasion"}, headers=as_user()
    )
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_vote_flow_escalates_on_fourth_confirmation(client):
    report = submit_report(client)
    url = f"/api/reports/{report['id']}/votes"

    for i in range(3):
        response = client.post(url, json={"vote": "confirm", **VOTER_POSITION}, headers=as_user(f"voter-{i}"))
        assert response.status_code == 200
        assert response.json()["data"]["escalated"] is False

    response = client.post(url, json={"vote": "confirm", **VOTER_POSITION}, headers=as_user("voter-3"))
    data = response.json()["data"]
    assert data["confirmCount"] == 4
    assert data["denyCount"] == 0
    assert data["escalated"] is True
    assert data["verificationStatus"] == "verified"

    alert = client.get(f"/api/alerts/{data['alertId']}", headers=API_KEY).json()["data"]
    assert alert["source"] == {"type": "report", "reportId": report["id"]}
    assert alert["metadata"]["communityVerified"] is True
    assert alert["targetArea"]["radius"] == 5000

    own = client.get(f"/api/reports/{report['id']}", headers=as_user("voter-3")).json()["data"]
    assert own["userVote"] == "confirm"
    assert own["status"] == "verified"


def test_vote_change_and_retract(client):
    report = submit_report(client)
    url = f"/api/reports/{report['id']}/votes"

    client.post(url, json={"vote": "confirm", **VOTER_POSITION}, headers=as_user("voter-1"))
    response = client.post(url, json={"vote": "deny", **VOTER_POSITION}, headers=as_user("voter-1"))
    assert (response.json()["data"]["confirmCount"], response.json()["data"]["denyCount"]) == (0, 1)

    response = client.delete(url, headers=as_user("voter-1"))
    assert response.status_code == 200
    assert response.json()["data"]["denyCount"] == 0


def test_vote_out_of_range(client):
    report = submit_report(client)
    response = client.post(
        f"/api/reports/{report['id']}/votes",
        json={"vote": "confirm", "lat": 32.2, "lng": 34.7818},
        headers=as_user("voter-1"),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "out_of_range"


def test_vote_on_rejected_report(client):
    report = submit_report(client)
    response = client.post(
        f"/api/reports/{report['id']}/moderate", json={"action": "reject"}, headers=as_user("admin-1", "admin")
    )
    assert response.json()["data"]["status"] == "rejected"

    response = client.post(
        f"/api/reports/{report['id']}/votes", json={"vote": "confirm", **VOTER_POSITION}, headers=as_user()
    )
    assert response.status_code == 409
    assert response.json()["error"] == "not_votable"


def test_vote_on_unknown_report(client):
    response = client.post(
        "/api/reports/missing/votes", json={"vote": "confirm", **VOTER_POSITION}, headers=as_user()
    )
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_vote_value(client):
    report = submit_report(client)
    response = client.post(
        f"/api/reports/{report['id']}/votes", json={"vote": "maybe", **VOTER_POSITION}, headers=as_user()
    )
    assert response.status_code == 400


def test_citizen_cannot_issue_alert(client):
    response = client.post("/api/alerts", json=ALERT_BODY, headers=as_user())
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_create_alert_clamps_radius(client):
    alert = create_alert(client, radius=10)
    assert alert["status"] == "active"
    assert alert["targetArea"]["radius"] == 100
    assert alert["metadata"]["adminVerified"] is True


def test_alert_transitions(client):
    alert = create_alert(client)
    url = f"/api/alerts/{alert['id']}/transition"
    responder = as_user("responder-1", "responder")

    response = client.post(url, json={"action": "resolve", "reason": "All clear"}, headers=responder)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "resolved"

    response = client.post(url, json={"action": "resolve"}, headers=responder)
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

    response = client.post(url, json={"action": "cancel"}, headers=responder)
    assert response.status_code == 409

    response = client.post(url, json={"action": "reactivate"}, headers=responder)
    assert response.status_code == 403

    response = client.post(url, json={"action": "reactivate"}, headers=as_user("admin-1", "admin"))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "active"

    response = client.post(url, json={"action": "explode"}, headers=responder)
    assert response.status_code == 400


def test_update_alert(client):
    alert = create_alert(client)
    response = client.patch(
        f"/api/alerts/{alert['id']}",
        json={"severity": "critical", "effectiveUntil": "2999-01-01T00:00:00"},
        headers=as_user("responder-1", "responder"),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["severity"] == "critical"
    assert data["effectiveUntil"].startswith("2999-01-01T00:00:00")


def test_nearby_alerts(client):
    alert = create_alert(client)
    response = client.get(
        "/api/alerts/nearby", params={"lat": 32.0860, "lng": 34.7820, "radius": 2000}, headers=API_KEY
    )
    assert response.status_code == 200
    assert [a["id"] for a in response.json()["data"]] == [alert["id"]]

    response = client.get("/api/alerts/nearby", params={"lat": 31.7683, "lng": 35.2137}, headers=API_KEY)
    assert response.json()["data"] == []


def test_unknown_alert(client):
    response = client.get("/api/alerts/missing", headers=API_KEY)
    assert response.status_code == 404


def test_stream_management_for_unknown_connection(client):
    response = client.put("/api/stream/nope/location", json={"lat": 32.0, "lng": 34.8}, headers=API_KEY)
    assert response.status_code == 404

    response = client.delete("/api/stream/nope", headers=API_KEY)
    assert response.status_code == 404


def test_stream_move_and_leave(client):
    broker = client.app.state.services.broker
    broker.join("c1", GeoPoint(32.0, 34.8))

    response = client.put("/api/stream/c1/location", json={"lat": 32.1, "lng": 34.9}, headers=API_KEY)
    assert response.status_code == 200
    assert broker.get("c1").point == GeoPoint(32.1, 34.9)

    response = client.delete("/api/stream/c1", headers=API_KEY)
    assert response.status_code == 200
    assert broker.get("c1") is None


def test_population_requires_privileged_role(client):
    params = {"lat": 32.0, "lng": 34.8, "radius": 1000}
    response = client.get("/api/stream/population", params=params, headers=as_user())
    assert response.status_code == 403

    client.app.state.services.broker.join("c1", GeoPoint(32.0, 34.8))
    response = client.get("/api/stream/population", params=params, headers=as_user("responder-1", "responder"))
    assert response.json()["data"]["count"] == 1


@pytest.mark.parametrize("lat", [91, -100])
def test_stream_rejects_invalid_coordinates(client, lat):
    response = client.get("/api/stream", params={"lat": lat, "lng": 34.8}, headers=API_KEY)
    assert response.status_code == 400