import pytest
from freezegun import freeze_time

from checkin_unified import MemberNotFoundError, MembershipCalculator
from tests.conftest import RecordingHook

EMAIL = "ana@example.org"


def attend(db, name, when, email=EMAIL, checked_in=True):
    event_id = db.insert_event(name, when)
    db.add_manual_attendee(event_id, email, "Ana", "Lopez", checked_in=checked_in)
    return event_id


@freeze_time("2025-06-01 12:00:00")
class TestActivation:

    def test_two_events_is_inactive(self, ledger, db):
        attend(db, "Philosophy Evening", "2025-03-01T19:00:00")
        attend(db, "History Talk", "2025-04-01T19:00:00")

        result = ledger.recalculate(EMAIL)

        assert result.total_events == 2
        assert result.is_active is False
        assert result.created is True

    def test_third_event_activates_and_reclassifying_it_deactivates(self, ledger, db, hook):
        attend(db, "Philosophy Evening", "2025-03-01T19:00:00")
        attend(db, "History Talk", "2025-04-01T19:00:00")
        third = attend(db, "Science Night", "2025-05-01T19:00:00")

        activated = ledger.recalculate(EMAIL)
        assert activated.is_active is True
        assert activated.status_changed is True
        assert hook.added == [EMAIL]

        db.update_event(third, name="Members Summer Party")
        deactivated = ledger.recalculate(EMAIL)

        assert deactivated.total_events == 2
        assert deactivated.is_active is False
        assert hook.removed == [EMAIL]

    def test_old_attendance_alone_is_inactive(self, ledger, db):
        attend(db, "Philosophy Evening", "2024-01-10T19:00:00")
        attend(db, "History Talk", "2024-02-10T19:00:00")
        attend(db, "Science Night", "2024-03-10T19:00:00")

        result = ledger.recalculate(EMAIL)

        assert result.total_events == 3
        assert result.recent_events == 0
        assert result.is_active is False

    def test_recency_window_is_nine_months(self, ledger, db):
        attend(db, "Philosophy Evening", "2024-01-10T19:00:00")
        attend(db, "History Talk", "2024-02-10T19:00:00")
        attend(db, "Science Night", "2024-09-01T13:00:00")

        result = ledger.recalculate(EMAIL)

        assert result.recent_events == 1
        assert result.is_active is True

    def test_unchecked_and_deleted_tickets_do_not_count(self, ledger, db):
        attend(db, "Philosophy Evening", "2025-03-01T19:00:00")
        attend(db, "History Talk", "2025-04-01T19:00:00")
        attend(db, "Science Night", "2025-05-01T19:00:00", checked_in=False)
        deleted_event = attend(db, "Poetry Night", "2025-05-10T19:00:00")
        attendee = db.get_attendees_for_event(deleted_event)[0]
        db.soft_delete_attendee(attendee["id"])

        assert ledger.recalculate(EMAIL).total_events == 2

    def test_two_tickets_for_one_event_count_once(self, ledger, db):
        event_id = attend(db, "Philosophy Evening", "2025-03-01T19:00:00")
        db.add_manual_attendee(event_id, EMAIL, checked_in=True)

        assert ledger.recalculate(EMAIL).total_events == 1

    def test_social_and_seasonal_events_are_excluded(self, ledger, db):
        attend(db, "Riverside Walk", "2025-03-01T10:00:00")
        attend(db, "Friday Drinks", "2025-03-07T18:00:00")
        attend(db, "Winter Solstice Celebration", "2024-12-21T18:00:00")
        attend(db, "Winter Lecture Series", "2025-01-15T19:00:00")

        assert ledger.recalculate(EMAIL).total_events == 1

    def test_email_is_case_insensitive(self, ledger, db):
        attend(db, "Philosophy Evening", "2025-03-01T19:00:00", email="Ana@Example.org")
        assert ledger.recalculate("ANA@example.org").total_events == 1


@freeze_time("2025-06-01 12:00:00")
class TestExpiry:

    def test_event_based_expiry(self, ledger, db):
        attend(db, "Philosophy Evening", "2025-05-10T19:00:00")

        result = ledger.recalculate(EMAIL)

        assert result.last_event_date == "2025-05-10T19:00:00"
        assert result.expires_at == "2026-02-10T19:00:00"

    def test_month_end_is_clamped(self, ledger, db):
        attend(db, "Philosophy Evening", "2025-05-31T19:00:00")
        assert ledger.recalculate(EMAIL).expires_at == "2026-02-28T19:00:00"

    def test_manual_override_extends(self, ledger, db):
        db.add_manual_member(EMAIL, "Ana", "Lopez", manual_expires_at="2026-12-31")
        attend(db, "Philosophy Evening", "2025-05-10T19:00:00")

        assert ledger.recalculate(EMAIL).expires_at == "2026-12-31T00:00:00"

    def test_manual_override_never_shortens(self, ledger, db):
        db.add_manual_member(EMAIL, manual_expires_at="2025-07-01")
        attend(db, "Philosophy Evening", "2025-05-10T19:00:00")

        assert ledger.recalculate(EMAIL).expires_at == "2026-02-10T19:00:00"

    def test_manual_override_alone(self, ledger, db):
        db.add_manual_member(EMAIL, manual_expires_at="2026-01-01")

        result = ledger.recalculate(EMAIL)

        assert result.total_events == 0
        assert result.is_active is False
        assert result.expires_at == "2026-01-01T00:00:00"

    def test_no_events_no_expiry(self, ledger, db):
        result = ledger.recalculate(EMAIL)
        assert result.expires_at is None
        assert result.last_event_date is None


@freeze_time("2025-06-01 12:00:00")
class TestMemberListHook:

    def _activate(self, db):
        attend(db, "Philosophy Evening", "2025-03-01T19:00:00")
        attend(db, "History Talk", "2025-04-01T19:00:00")
        attend(db, "Science Night", "2025-05-01T19:00:00")

    def test_hook_failure_does_not_fail_recalculation(self, ledger, db, config):
        self._activate(db)
        membership = MembershipCalculator(db, config, RecordingHook(fail=True))

        result = membership.recalculate(EMAIL)

        assert result.is_active is True
        log = db.get_member_sync_log(EMAIL)
        assert [(e["operation"], e["status"]) for e in log] == [("add", "failed")]
        assert "unavailable" in log[0]["error_message"]

    def test_successful_call_is_logged(self, ledger, db):
        self._activate(db)
        ledger.recalculate(EMAIL)
        assert [e["status"] for e in db.get_member_sync_log(EMAIL)] == ["success"]

    def test_no_call_without_transition(self, ledger, db, hook):
        self._activate(db)
        ledger.recalculate(EMAIL)
        ledger.recalculate(EMAIL)
        assert hook.added == [EMAIL]


class TestLookup:

    def test_unknown_id_raises(self, ledger):
        with pytest.raises(MemberNotFoundError):
            ledger.recalculate("mem_missing")

    def test_lookup_by_id(self, ledger, db):
        db.upsert_member_stub(EMAIL, "Ana", "Lopez")
        member = db.get_member_by_email(EMAIL)
        assert ledger.recalculate(member["id"]).email == EMAIL

    def test_stub_never_overwrites_names(self, db):
        db.upsert_member_stub(EMAIL, "Ana", None)
        db.upsert_member_stub(EMAIL, "Anabel", "Lopez")
        member = db.get_member_by_email(EMAIL)
        assert (member["first_name"], member["last_name"]) == ("Ana", "Lopez")


class TestTriggers:

    def test_sweep_picks_events_that_started_two_to_three_hours_ago(self, ledger, db):
        # 18:30 UTC is 19:30 BST
        due = attend(db, "Philosophy Evening", "2025-06-01T17:00:00")
        attend(db, "Morning Talk", "2025-06-01T15:00:00", email="b@example.org")
        attend(db, "Late Talk", "2025-06-01T18:00:00", email="c@example.org")

        with freeze_time("2025-06-01 18:30:00"):
            result = ledger.sweep()

        assert result["events_processed"] == 1
        assert result["results"][0]["event_id"] == due
        assert result["results"][0]["members_updated"] == 1

    @freeze_time("2025-06-01 12:00:00")
    def test_recalculate_all_resumes_from_offset(self, ledger, db):
        for email in ("a@example.org", "b@example.org", "c@example.org"):
            db.upsert_member_stub(email)

        result = ledger.membership.recalculate_all(start_offset=1)

        assert result["total"] == 3
        assert result["processed"] == 2
        assert result["errors"] == []
