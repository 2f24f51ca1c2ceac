import sqlite3

import pytest
from freezegun import freeze_time

from checkin_unified import SOFT_DELETED_STATUS
from tests.sample_payloads import bare_line_item, line_item, order

EVENT_DATE = "2025-01-15T19:00:00"
BEFORE_EVENT = "2025-01-10 12:00:00"

HOLDERS = [("ana@example.org", "Ana", "Lopez"), ("ben@example.org", "Ben", "Okafor")]


@pytest.fixture
def event_id(db, woo):
    woo.set_orders(101, [order(5001, [line_item(7001, 101, HOLDERS)])])
    return db.insert_event("Philosophy Evening - 15/01/2025", EVENT_DATE, 101)


def _attendees(db, event_id):
    return {a['ticket_id']: a for a in db.get_attendees_for_event(event_id)}


@freeze_time(BEFORE_EVENT)
class TestSync:

    def test_first_sync_creates_attendees(self, ledger, db, event_id):
        result = ledger.sync(event_id)

        assert result.synced is True
        assert result.reason == "synced"
        assert (result.created, result.updated) == (2, 0)
        attendees = _attendees(db, event_id)
        assert set(attendees) == {"T7001-0", "T7001-1"}
        assert attendees["T7001-0"]["checked_in"] is False
        assert attendees["T7001-0"]["source_product_id"] == "101"
        assert attendees["T7001-0"]["booker_email"] == "booker@example.org"

    def test_second_sync_is_idempotent(self, ledger, db, event_id):
        ledger.sync(event_id)
        again = ledger.sync(event_id, force_refresh=True)

        assert again.created == 0
        assert again.updated == 2
        assert db.count_attendees(event_id) == 2

    def test_ticket_id_is_unique_per_event(self, db, event_id):
        first = db.insert_attendee(event_id, "ana@example.org", "Ana", "Lopez", ticket_id="T1")
        second = db.insert_attendee(event_id, "ana@example.org", "Ana", "Lopez", ticket_id="T1")

        assert first is not None
        assert second is None
        assert db.count_attendees(event_id) == 1

    def test_recent_sync_is_served_from_cache(self, ledger, woo, event_id):
        ledger.sync(event_id)
        calls = len(woo.calls)

        cached = ledger.sync(event_id)

        assert cached.synced is False
        assert cached.reason == "cached"
        assert cached.cache_age_seconds == 0
        assert len(woo.calls) == calls

    def test_order_payloads_are_cached_between_syncs(self, ledger, woo, event_id):
        ledger.sync(event_id)
        ledger.cache.invalidate(f"sync:event:{event_id}")

        result = ledger.sync(event_id)

        assert result.synced is True
        assert woo.order_calls == ["101"]

    def test_force_refresh_bypasses_both_caches(self, ledger, woo, event_id):
        ledger.sync(event_id)
        ledger.sync(event_id, force_refresh=True)
        assert woo.order_calls == ["101", "101"]

    def test_cache_holds_only_sync_metadata(self, ledger, event_id):
        ledger.sync(event_id)
        meta = ledger.cache.get(f"sync:event:{event_id}")
        assert set(meta) == {"created", "updated", "timestamp"}

    def test_member_stubs_are_created(self, ledger, db, event_id):
        ledger.sync(event_id)
        ana = db.get_member_by_email("ana@example.org")
        assert (ana["first_name"], ana["last_name"]) == ("Ana", "Lopez")
        assert ana["is_active_member"] is False

    def test_local_edits_survive_sync(self, ledger, db, woo, event_id):
        ledger.sync(event_id)
        ana = _attendees(db, event_id)["T7001-0"]
        db.update_attendee_local(ana["id"], first_name="Anabel", email="anabel@example.org")

        woo.set_orders(101, [order(5001, [line_item(7001, 101, [
            ("ana.new@example.org", "Ann", "Lopes"), HOLDERS[1]])])])
        result = ledger.sync(event_id, force_refresh=True)

        kept = db.get_attendee(ana["id"])
        assert (kept["first_name"], kept["email"]) == ("Anabel", "anabel@example.org")
        assert kept["locally_modified"] is True
        assert result.skipped == 1
        assert result.updated == 1

    def test_check_in_state_is_never_touched(self, ledger, db, event_id):
        ledger.sync(event_id)
        ben = _attendees(db, event_id)["T7001-1"]
        db.set_checked_in(ben["id"])

        ledger.sync(event_id, force_refresh=True)

        assert db.get_attendee(ben["id"])["checked_in"] is True

    def test_external_status_change_is_applied(self, ledger, db, woo, event_id):
        ledger.sync(event_id)
        woo.set_orders(101, [order(5001, [line_item(7001, 101, HOLDERS)], status="refunded")])

        ledger.sync(event_id, force_refresh=True)

        statuses = {a["order_status"] for a in _attendees(db, event_id).values()}
        assert statuses == {"refunded"}

    def test_soft_deleted_ticket_is_not_resurrected(self, ledger, db, event_id):
        ledger.sync(event_id)
        ana = _attendees(db, event_id)["T7001-0"]
        db.soft_delete_attendee(ana["id"])

        ledger.sync(event_id, force_refresh=True)

        assert db.get_attendee(ana["id"])["order_status"] == SOFT_DELETED_STATUS

    def test_cancelled_orders_do_not_create_attendees(self, ledger, db, woo, event_id):
        woo.set_orders(101, [
            order(5001, [line_item(7001, 101, HOLDERS)]),
            order(5002, [line_item(7002, 101, [("cal@example.org", "Cal", "Reyes")])],
                  status="cancelled"),
        ])

        result = ledger.sync(event_id)

        assert result.created == 2
        assert result.skipped == 1
        assert "T7002-0" not in _attendees(db, event_id)

    def test_line_items_for_other_products_are_ignored(self, ledger, db, woo, event_id):
        woo.set_orders(101, [order(5001, [
            line_item(7001, 101, HOLDERS),
            line_item(7003, 999, [("zed@example.org", "Zed", "Ng")]),
        ])])

        ledger.sync(event_id)

        assert set(_attendees(db, event_id)) == {"T7001-0", "T7001-1"}

    def test_fallback_tickets_are_flagged(self, ledger, db, woo, event_id):
        woo.set_orders(101, [order(5004, [bare_line_item(7004, 101, quantity=2)])])

        result = ledger.sync(event_id)

        attendees = db.get_attendees_for_event(event_id)
        assert result.created == 2
        assert len(attendees) == 2
        assert all(a["is_synthetic"] for a in attendees)

    def test_database_errors_are_counted_not_raised(self, ledger, db, monkeypatch, event_id):
        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "insert_attendee_from_sync", broken)
        result = ledger.sync(event_id)

        assert result.synced is True
        assert result.errors == 2
        assert result.created == 0


@freeze_time(BEFORE_EVENT)
class TestFanOut:

    @pytest.fixture
    def merged_event(self, db, woo):
        woo.set_orders(101, [order(5001, [line_item(7001, 101, HOLDERS)])])
        woo.set_orders(102, [order(5002, [line_item(7002, 102, [("cal@example.org", "Cal", "Reyes")])])])
        event_id = db.insert_event("Philosophy Evening - Wednesday, January 15, 2025", EVENT_DATE, 101)
        db.set_event_merge_state(event_id, "Philosophy Evening - Wednesday, January 15, 2025", ["102"])
        return event_id

    def test_fetches_every_product(self, ledger, woo, merged_event):
        result = ledger.sync(merged_event)

        assert woo.order_calls == ["101", "102"]
        assert result.created == 3
        assert result.products_synced == 2

    def test_one_failing_product_is_partial(self, ledger, db, woo, merged_event):
        woo.failing.add("102")

        result = ledger.sync(merged_event)

        assert result.synced is True
        assert result.reason == "partial"
        assert result.failed_products == ["102"]
        assert db.count_attendees(merged_event) == 2

    def test_all_products_failing(self, ledger, woo, merged_event):
        woo.failing.update({"101", "102"})

        result = ledger.sync(merged_event)

        assert result.synced is False
        assert result.reason == "woocommerce_error"
        assert ledger.cache.get(f"sync:event:{merged_event}") is None


class TestSkipReasons:

    def test_unknown_event(self, ledger):
        assert ledger.sync("evt_missing").reason == "not_found"

    @freeze_time(BEFORE_EVENT)
    def test_no_product_reference(self, ledger, db, woo):
        event_id = db.insert_event("Door-only Talk", EVENT_DATE)
        assert ledger.sync(event_id).reason == "no_product_id"
        assert woo.calls == []

    @freeze_time(BEFORE_EVENT)
    def test_tombstoned_event(self, ledger, db, woo, event_id):
        primary = db.insert_event("Philosophy Evening", EVENT_DATE, 102)
        db.tombstone_events([event_id], primary)

        assert ledger.sync(event_id).reason == "merged"
        assert woo.calls == []


class TestFreezeBoundary:

    def test_just_before_cutoff_proceeds(self, ledger, woo, event_id):
        with freeze_time("2025-01-15 22:59:00"):
            result = ledger.sync(event_id)
        assert result.synced is True

    def test_just_after_cutoff_is_frozen(self, ledger, woo, event_id):
        with freeze_time("2025-01-15 23:00:01"):
            result = ledger.sync(event_id, force_refresh=True)
        assert result.synced is False
        assert result.reason == "past_cutoff"
        assert woo.calls == []

    def test_cutoff_follows_venue_summer_time(self, ledger, db, woo):
        summer = db.insert_event("Garden Talk", "2025-07-15T18:30:00", 300)

        # 23:00 BST is 22:00 UTC
        with freeze_time("2025-07-15 21:59:00"):
            assert ledger.sync(summer).reason == "synced"
        with freeze_time("2025-07-15 22:00:01"):
            assert ledger.sync(summer, force_refresh=True).reason == "past_cutoff"


@freeze_time(BEFORE_EVENT)
class TestResyncAll:

    def test_resumes_from_offset(self, ledger, db, woo):
        for i, pid in enumerate((401, 402, 403)):
            woo.set_orders(pid, [order(6000 + i, [line_item(8000 + i, pid, [(f"p{i}@example.org", "P", str(i))])])])
            db.insert_event(f"Talk {i}", f"2025-01-2{i}T19:00:00", pid)

        batch = ledger.resync_all(start_offset=1)

        assert batch.total == 3
        assert batch.processed == 2
        assert batch.synced == 2
        assert woo.order_calls == ["402", "403"]

    def test_failures_do_not_stop_the_batch(self, ledger, db, woo):
        woo.failing.add("401")
        woo.set_orders(402, [order(6001, [line_item(8001, 402, HOLDERS)])])
        db.insert_event("Talk A", "2025-01-20T19:00:00", 401)
        db.insert_event("Talk B", "2025-01-21T19:00:00", 402)

        batch = ledger.resync_all()

        assert batch.failed == 1
        assert batch.synced == 1
        assert batch.created == 2

    def test_frozen_events_are_left_alone(self, ledger, db, woo):
        db.insert_event("Old Talk", "2025-01-01T19:00:00", 401)
        db.insert_event("New Talk", "2025-01-20T19:00:00", 402)

        batch = ledger.resync_all()

        assert batch.total == 1
        assert woo.order_calls == ["402"]
