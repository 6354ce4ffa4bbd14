"""
Tests for the Flask API
"""
from dataclasses import replace

import pytest

from app_backend import create_app
from checkin_config import DEFAULT_INTERNAL_API_KEY
from checkin_models import CheckinStatus
from checkin_system import CheckinSystem

from conftest import day


@pytest.fixture
def client(system):
    app = create_app(system)
    return app.test_client()


def test_checkin_creates_record(client):
    response = client.post('/checkin', json={"user_id": "user-1"})
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "active"
    assert body["reminders_sent"] == 0
    assert body["next_due_at"]


def test_checkin_requires_user_id(client):
    assert client.post('/checkin', json={}).status_code == 400
    assert client.post('/checkin', json={"user_id": "   "}).status_code == 400
    assert client.post('/checkin', data="not json").status_code == 400


def test_checkin_after_inheritance_trigger_conflicts(client, store):
    client.post('/checkin', json={"user_id": "user-1"})
    current = store.get("user-1")
    store.compare_and_set(replace(current, status=CheckinStatus.INHERITANCE_TRIGGERED), current.version)

    response = client.post('/checkin', json={"user_id": "user-1"})
    assert response.status_code == 409


def test_status(client):
    client.post('/checkin', json={"user_id": "user-1"})
    response = client.get('/checkin/status?user_id=user-1')
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "active"
    assert body["max_reminders"] == 4
    assert body["grace_period_days"] == 30


def test_status_unknown_user(client):
    assert client.get('/checkin/status?user_id=nobody').status_code == 404
    assert client.get('/checkin/status').status_code == 400


def test_notifications_after_tick(client, system):
    system.service.record_checkin("user-1", now=day(0))
    system.driver.run_tick(day(152))

    response = client.get('/checkin/notifications?user_id=user-1')
    assert response.status_code == 200
    body = response.get_json()
    assert len(body) == 1
    assert body[0]["type"] == "reminder_sent"
    assert body[0]["action_required"] is False


def test_update_preferences(client):
    client.post('/checkin', json={"user_id": "user-1"})
    response = client.put('/checkin/preferences', json={
        "user_id": "user-1",
        "preferences": {"alert_type": "direct_inheritance", "custom_message": "Call Sam"},
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body["alert_type"] == "direct_inheritance"
    assert body["custom_message"] == "Call Sam"


def test_update_preferences_rejects_bad_alert_type(client):
    client.post('/checkin', json={"user_id": "user-1"})
    response = client.put('/checkin/preferences', json={
        "user_id": "user-1", "preferences": {"alert_type": "shout"},
    })
    assert response.status_code == 400


def test_update_preferences_rejects_non_object(client):
    client.post('/checkin', json={"user_id": "user-1"})
    for preferences in (["x"], "direct_inheritance", 7):
        response = client.put('/checkin/preferences', json={"user_id": "user-1", "preferences": preferences})
        assert response.status_code == 400

    assert client.put('/checkin/preferences', json=[{"user_id": "user-1"}]).status_code == 400
    response = client.put('/checkin/preferences', json={
        "user_id": "user-1", "preferences": {"professional_contact_ids": "gp"},
    })
    assert response.status_code == 400


def test_update_professional_preferences(client):
    client.post('/checkin', json={"user_id": "user-1"})
    response = client.put('/checkin/preferences', json={
        "user_id": "user-1",
        "preferences": {
            "use_professional_contacts_only": True,
            "professional_contact_ids": ["gp"],
            "professional_concern_message": "Please visit",
            "separate_professional_and_family": False,
            "allow_wellness_checks": False,
        },
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body["use_professional_contacts_only"] is True
    assert body["professional_contact_ids"] == ["gp"]
    assert body["professional_concern_message"] == "Please visit"
    assert body["separate_professional_and_family"] is False
    assert body["allow_wellness_checks"] is False


def test_run_tick_requires_internal_key(client):
    assert client.post('/internal/run-tick').status_code == 403
    assert client.post('/internal/run-tick', headers={"X-Internal-Key": "wrong"}).status_code == 403

    response = client.post('/internal/run-tick', headers={"X-Internal-Key": "test-key"})
    assert response.status_code == 200
    assert response.get_json()["processed"] == 0


def test_run_tick_disabled_with_placeholder_key(config, store, dispatcher, trigger):
    placeholder = replace(config, internal_api_key=DEFAULT_INTERNAL_API_KEY)
    client = create_app(CheckinSystem(placeholder, store=store, dispatcher=dispatcher, trigger=trigger)).test_client()

    response = client.post('/internal/run-tick', headers={"X-Internal-Key": DEFAULT_INTERNAL_API_KEY})
    assert response.status_code == 403
    assert "disabled" in response.get_json()["error"]

    empty = replace(config, internal_api_key="")
    client = create_app(CheckinSystem(empty, store=store, dispatcher=dispatcher, trigger=trigger)).test_client()
    assert client.post('/internal/run-tick', headers={"X-Internal-Key": ""}).status_code == 403


def test_unexpected_error_returns_500(client, system, monkeypatch):
    def explode(user_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(system.service, "get_status", explode)
    response = client.get('/checkin/status?user_id=user-1')
    assert response.status_code == 500
    assert response.get_json() == {"error": "internal error"}
