import pytest
from freezegun import freeze_time

from checkin_unified import AdvisoryLock, create_app
from tests.sample_payloads import line_item, order


@pytest.fixture
def client(ledger):
    app = create_app(ledger)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def event_id(db, woo):
    woo.set_orders(101, [order(5001, [line_item(7001, 101, [("ana@example.org", "Ana", "Lopez")])])])
    return db.insert_event("Philosophy Evening - 15/01/2025", "2025-01-15T19:00:00", 101)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_events_hide_tombstones_by_default(client, db, event_id):
    other = db.insert_event("Philosophy Evening - Members Only", "2025-01-15T19:00:00", 102)
    db.tombstone_events([other], event_id)

    assert [e["id"] for e in client.get("/api/events").get_json()] == [event_id]
    assert len(client.get("/api/events?include_merged=true").get_json()) == 2


def test_unknown_event_is_404(client):
    assert client.get("/api/events/evt_missing").status_code == 404
    assert client.post("/api/events/evt_missing/sync").status_code == 404


@freeze_time("2025-01-10 12:00:00")
def test_sync_then_list_attendees(client, event_id):
    synced = client.post(f"/api/events/{event_id}/sync").get_json()
    assert synced["reason"] == "synced"
    assert synced["created"] == 1

    listing = client.get(f"/api/events/{event_id}/attendees").get_json()
    assert listing["total"] == 1
    assert listing["checked_in"] == 0

    again = client.post(f"/api/events/{event_id}/sync").get_json()
    assert again["reason"] == "cached"


def test_past_event_reports_cutoff(client, event_id):
    with freeze_time("2025-01-16 09:00:00"):
        body = client.post(f"/api/events/{event_id}/sync?force=true").get_json()
        detail = client.get(f"/api/events/{event_id}").get_json()
    assert body["reason"] == "past_cutoff"
    assert detail["frozen"] is True


def test_operator_actions(client, db, event_id):
    created = client.post(f"/api/events/{event_id}/attendees",
                          json={"email": "Door@Example.org", "first_name": "Dora"})
    assert created.status_code == 201
    attendee = created.get_json()
    assert attendee["manually_added"] is True
    assert attendee["email"] == "door@example.org"

    checked = client.post(f"/api/attendees/{attendee['id']}/check-in").get_json()
    assert checked["checked_in"] is True
    assert checked["checked_in_at"]

    edited = client.patch(f"/api/attendees/{attendee['id']}", json={"last_name": "Marsh"}).get_json()
    assert edited["last_name"] == "Marsh"
    assert edited["locally_modified"] is True

    assert client.delete(f"/api/attendees/{attendee['id']}").status_code == 200
    assert db.get_attendee(attendee["id"])["order_status"] == "deleted"

    assert client.delete(f"/api/attendees/{attendee['id']}?hard=true").status_code == 200
    assert db.get_attendee(attendee["id"]) is None


def test_edit_rejects_sync_owned_fields(client, db, event_id):
    attendee_id = db.add_manual_attendee(event_id, "a@example.org")
    response = client.patch(f"/api/attendees/{attendee_id}", json={"checked_in": True})
    assert response.status_code == 400


def test_manual_attendee_requires_email(client, event_id):
    assert client.post(f"/api/events/{event_id}/attendees", json={}).status_code == 400


def test_merge_candidates_and_run(client, db, event_id):
    db.insert_event("Philosophy Evening - Members Only", "2025-01-15T19:00:00", 102,
                    is_members_only=True)

    candidates = client.get("/api/merge/candidates").get_json()
    assert candidates["count"] == 1

    merged = client.post("/api/merge").get_json()
    assert merged["groups_merged"] == 1


def test_merge_reports_contention(client, db):
    AdvisoryLock(db, "event-merge").acquire()
    response = client.post("/api/merge")
    assert response.status_code == 409
    assert response.get_json()["lock_acquired"] is False


@freeze_time("2025-06-01 12:00:00")
def test_manual_member_and_recalculate(client, db):
    response = client.post("/api/members", json={
        "email": "patron@example.org", "first_name": "Pat", "manual_expires_at": "2026-03-01",
        "notes": "Founding patron",
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body["member"]["manually_added"] is True
    assert body["membership"]["expires_at"] == "2026-03-01T00:00:00"

    detail = client.get("/api/members/patron@example.org").get_json()
    assert detail["member"]["notes"] == "Founding patron"

    recalculated = client.post("/api/members/patron@example.org/recalculate").get_json()
    assert recalculated["is_active"] is False


def test_unknown_member_id_is_404(client):
    assert client.post("/api/members/mem_missing/recalculate").status_code == 404


def test_cron_endpoints(client, ledger):
    ledger.cache.set("stale", 1, -1)
    assert client.post("/api/cron/cleanup-cache").get_json() == {"deleted": 1}
    assert client.post("/api/cron/recalculate-memberships").get_json()["events_processed"] == 0
