"""
Tests for fieldops/services/cascade.py - shift propagation, conflict detection,
summaries and client notification text.
"""
from datetime import date, datetime, timedelta

from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.cascade import (
    Appointment,
    CascadeChange,
    calculate_cascade,
    calculate_duration_for_team_change,
    date_only_start,
    generate_client_notification,
)

DAY = datetime(2026, 3, 10)


def at(hour, minute=0, day=DAY):
    return day.replace(hour=hour, minute=minute)


def _day(*appointments):
    return list(appointments)


# ---------------------------------------------------------------------------
# Shift propagation
# ---------------------------------------------------------------------------


class TestShiftPropagation:
    def test_every_later_appointment_shifts_by_primary_delta(self):
        a = Appointment("a", at(8), 3.0, client="Alice")
        b = Appointment("b", at(11, 30), 1.0, client="Bob")
        c = Appointment("c", at(13), 1.0, client="Cara")

        # A ends 11:00 -> 11:30
        result = calculate_cascade(a, at(8, 30), 3.0, _day(a, b, c))

        assert result.delta_minutes == 30
        assert [ch.appointment.id for ch in result.cascaded] == ["b", "c"]
        assert result.cascaded[0].new_start == at(12)
        assert result.cascaded[0].new_end == at(13)
        assert result.cascaded[1].new_start == at(13, 30)
        assert result.cascaded[1].new_end == at(14, 30)
        assert all(ch.delta_minutes == 30 for ch in result.changes)
        assert result.conflicts == []

    def test_delta_is_measured_on_end_time(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        b = Appointment("b", at(12), 2.0, client="Bob")

        # Same start, 30 minutes longer
        result = calculate_cascade(a, at(9), 3.5, _day(a, b))

        assert result.delta_minutes == 30
        assert result.cascaded[0].new_start == at(12, 30)
        assert result.cascaded[0].new_duration == 2.0

    def test_earlier_change_pulls_appointments_forward(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        b = Appointment("b", at(13), 2.0, client="Bob")

        result = calculate_cascade(a, at(8), 3.0, _day(a, b))

        assert result.delta_minutes == -60
        assert result.cascaded[0].new_start == at(12)

    def test_primary_change_is_first(self):
        a = Appointment("a", at(9), 3.0, client="Alice")

        result = calculate_cascade(a, at(10), 3.0, _day(a))

        assert result.primary.appointment is a
        assert result.primary.reason == "Primary change"
        assert result.primary.original_start == at(9)
        assert result.cascaded == []
        assert result.affected_clients == ["Alice"]

    def test_cascaded_reason_names_trigger(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        b = Appointment("b", at(12), 2.0, client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, b))

        assert result.cascaded[0].reason == "Cascaded from Alice"
        assert result.affected_clients == ["Alice", "Bob"]


class TestSelection:
    def test_completed_appointment_not_moved(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        done = Appointment("b", at(12), 2.0, status="completed", client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, done))

        assert result.cascaded == []
        assert "Bob" not in result.affected_clients

    def test_other_day_not_moved(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        tomorrow = Appointment("b", at(12, day=DAY + timedelta(days=1)), 2.0, client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, tomorrow))

        assert result.cascaded == []

    def test_appointment_before_original_end_not_moved(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        overlapping = Appointment("b", at(11), 2.0, client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, overlapping))

        assert result.cascaded == []

    def test_cascaded_in_start_order(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        late = Appointment("c", at(15), 1.0, client="Cara")
        early = Appointment("b", at(12), 1.0, client="Bob")

        result = calculate_cascade(a, at(9, 15), 3.0, _day(late, a, early))

        assert [ch.appointment.id for ch in result.cascaded] == ["b", "c"]

    def test_missing_duration_uses_default(self):
        a = Appointment("a", at(9), None, client="Alice")
        b = Appointment("b", at(12), None, client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, b))

        assert result.primary.original_duration == 3.0
        assert result.cascaded[0].new_end == at(15, 30)


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflicts:
    def test_pushed_past_business_close(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        c = Appointment("c", at(16), 3.0, client="Cara")

        # +90 minutes: Cara ends 20:30
        result = calculate_cascade(a, at(9), 4.5, _day(a, c))

        [conflict] = result.conflicts
        assert conflict.severity == "error"
        assert conflict.appointment is c
        assert conflict.reason == "Cara pushed past business hours (ends at 8:30 PM)"
        assert result.has_errors is True

    def test_business_close_from_config(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        c = Appointment("c", at(14), 2.0, client="Cara")

        result = calculate_cascade(
            a, at(9, 30), 3.0, _day(a, c), config=OrchestrationConfig(business_close_hour=16),
        )

        assert len(result.conflicts) == 1
        assert "pushed past business hours" in result.conflicts[0].reason

    def test_modified_window_overlaps_shared_crew(self):
        earlier = Appointment("e", at(7), 2.0, client="Eve", crew=["w1"])
        a = Appointment("a", at(10), 2.0, client="Alice", crew=["w1", "w2"])

        result = calculate_cascade(a, at(8), 2.0, _day(earlier, a))

        [conflict] = result.conflicts
        assert conflict.appointment is a
        assert conflict.conflicting is earlier
        assert conflict.reason == "Team member(s) w1 cannot be in two places at once"

    def test_moved_appointment_overlaps_unmoved_shared_crew(self):
        a = Appointment("a", at(9), 3.0, client="Alice", crew=["w1"])
        long_job = Appointment("f", at(11), 6.0, client="Finn", crew=["w2"])
        b = Appointment("b", at(12), 2.0, client="Bob", crew=["w2"])

        result = calculate_cascade(a, at(9), 5.0, _day(a, long_job, b))

        reasons = [c.reason for c in result.conflicts if c.appointment is b]
        assert reasons == ["Team member(s) w2 cannot be in two places at once"]

    def test_back_to_back_shared_crew_is_not_a_conflict(self):
        a = Appointment("a", at(9), 3.0, client="Alice", crew=["w1"])
        b = Appointment("b", at(12), 2.0, client="Bob", crew=["w1"])

        result = calculate_cascade(a, at(9), 4.0, _day(a, b))

        assert result.conflicts == []

    def test_no_shared_crew_no_conflict(self):
        earlier = Appointment("e", at(7), 2.0, client="Eve", crew=["w3"])
        a = Appointment("a", at(10), 2.0, client="Alice", crew=["w1"])

        result = calculate_cascade(a, at(8), 2.0, _day(earlier, a))

        assert result.conflicts == []
        assert result.has_errors is False


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


class TestSummary:
    def test_summary_lists_changes_and_conflicts(self):
        a = Appointment("a", at(9), 3.0, client="Alice")
        b = Appointment("b", at(12), 2.0, client="Bob")
        c = Appointment("c", at(16), 3.0, client="Cara")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, b, c))

        assert result.summary == (
            "Alice: moved later by 30 min"
            "\n\nAffected 2 subsequent appointments:"
            "\n• Bob: 30 min later"
            "\n• Cara: 30 min later"
            "\n\n⚠️ 1 conflict detected:"
            "\n• Cara pushed past business hours (ends at 7:30 PM)"
        )

    def test_duration_only_change(self):
        a = Appointment("a", at(9), 3.0, client="Alice")

        result = calculate_cascade(a, at(9), 2.5, _day(a))

        assert result.summary == "Alice: duration changed from 3h to 2.5h"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestTeamChangeDuration:
    def test_bigger_team_is_faster(self):
        assert calculate_duration_for_team_change(3.0, 2, 3) == 2.0

    def test_smaller_team_is_slower(self):
        assert calculate_duration_for_team_change(3.0, 3, 2) == 4.5

    def test_rounds_to_half_hour(self):
        # 4 * 2 / 3 = 2.67 -> 2.5
        assert calculate_duration_for_team_change(4.0, 2, 3) == 2.5

    def test_empty_team_keeps_duration(self):
        assert calculate_duration_for_team_change(3.0, 2, 0) == 3.0


class TestClientNotification:
    def _change(self, delta):
        appt = Appointment("b", at(12), 2.0, client="Bob")
        return CascadeChange(appt, at(12), 2.0, at(12) + timedelta(minutes=delta), 2.0, delta, "Cascaded from Alice")

    def test_staffing_change_wording(self):
        text = generate_client_notification("Bob", self._change(30), "Team size reduced")
        assert "staffing change" in text
        assert "12:30 PM" in text

    def test_later_wording(self):
        text = generate_client_notification("Bob", self._change(30), "Previous job ran long")
        assert text.startswith("Hi Bob, your appointment has been moved slightly later to 12:30 PM")

    def test_earlier_wording(self):
        text = generate_client_notification("Bob", self._change(-30), "Previous job finished early")
        assert "arrive earlier at 11:30 AM" in text

    def test_ten_oclock_keeps_both_digits(self):
        text = generate_client_notification("Bob", self._change(-120), "Schedule change")
        assert "10:00 AM" in text
        assert "010:00" not in text


class TestDateOnlyStart:
    def test_starts_at_nine(self):
        assert date_only_start(date(2026, 3, 10)) == datetime(2026, 3, 10, 9, 0)

    def test_cascades_like_a_timed_booking(self):
        a = Appointment("a", date_only_start(date(2026, 3, 10)), 3.0, client="Alice")
        b = Appointment("b", at(12), 2.0, client="Bob")

        result = calculate_cascade(a, at(9, 30), 3.0, _day(a, b))

        assert [c.appointment.id for c in result.changes] == ["a", "b"]
