"""
Cascade calculator - plans how one appointment's time change ripples through
the rest of that day.

Pure: no I/O, no persistence. Callers apply the plan and send whatever
notifications they derive from it.

Rules:
1. Only appointments on the same calendar day as the modified appointment's
   original start, starting at or after its original end, are moved.
2. Completed appointments are never moved.
3. Every moved appointment shifts by exactly the primary delta
   (new end - old end); durations of moved appointments are unchanged.
4. A moved appointment ending after business close, or overlapping an
   appointment it shares crew with, is an error-severity conflict.

Datetimes are naive local time, the way appointments are stored.
"""
import math
from datetime import date, datetime, time, timedelta
from typing import Optional

DEFAULT_DURATION_HOURS = 3.0
DEFAULT_BUSINESS_CLOSE_HOUR = 19
DEFAULT_START_TIME = time(9, 0)  # date-only appointments


class Appointment:
    """Minimal appointment view the calculator works on."""

    def __init__(
        self,
        id: str,
        start: datetime,
        duration_hours: Optional[float] = None,
        status: str = "scheduled",
        client: str = "",
        crew: Optional[list[str]] = None,
    ):
        self.id = str(id)
        self.start = start
        self.duration_hours = duration_hours
        self.status = status
        self.client = client
        self.crew = list(crew or [])

    def __repr__(self) -> str:
        return f"<Appointment {self.id} {self.start:%Y-%m-%d %H:%M} client={self.client}>"


class CascadeChange:
    def __init__(
        self,
        appointment: Appointment,
        original_start: datetime,
        original_duration: float,
        new_start: datetime,
        new_duration: float,
        delta_minutes: int,
        reason: str,
    ):
        self.appointment = appointment
        self.original_start = original_start
        self.original_duration = original_duration
        self.new_start = new_start
        self.new_duration = new_duration
        self.delta_minutes = delta_minutes
        self.reason = reason

    @property
    def new_end(self) -> datetime:
        return self.new_start + timedelta(hours=self.new_duration)

    def __repr__(self) -> str:
        return f"<CascadeChange {self.appointment.id} {self.delta_minutes:+d}min>"


class CascadeConflict:
    def __init__(
        self,
        appointment: Appointment,
        conflicting: Appointment,
        reason: str,
        severity: str = "error",
    ):
        self.appointment = appointment
        self.conflicting = conflicting
        self.reason = reason
        self.severity = severity

    def __repr__(self) -> str:
        return f"<CascadeConflict {self.severity}: {self.reason}>"


class CascadeResult:
    def __init__(
        self,
        changes: list[CascadeChange],
        conflicts: list[CascadeConflict],
        affected_clients: list[str],
        summary: str,
        delta_minutes: int = 0,
    ):
        self.changes = changes
        self.conflicts = conflicts
        self.affected_clients = affected_clients
        self.summary = summary
        self.delta_minutes = delta_minutes

    @property
    def primary(self) -> CascadeChange:
        return self.changes[0]

    @property
    def cascaded(self) -> list[CascadeChange]:
        return self.changes[1:]

    @property
    def has_errors(self) -> bool:
        return any(c.severity == "error" for c in self.conflicts)


def _duration(appointment: Appointment, default_hours: float) -> float:
    return float(appointment.duration_hours) if appointment.duration_hours else default_hours


def date_only_start(day: date) -> datetime:
    """Start time for an appointment booked for a day but no time."""
    return datetime.combine(day, DEFAULT_START_TIME)


def _overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def _format_clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def _shared_crew(a: Appointment, b: Appointment) -> list[str]:
    return [member for member in a.crew if member in b.crew]


def calculate_cascade(
    modified: Appointment,
    new_start: datetime,
    new_duration: float,
    appointments: list[Appointment],
    config=None,
) -> CascadeResult:
    """
    Compute the change plan for moving/resizing `modified`.

    config (OrchestrationConfig, optional) supplies business_close_hour and
    default_appointment_hours.
    """
    close_hour = config.business_close_hour if config else DEFAULT_BUSINESS_CLOSE_HOUR
    default_hours = config.default_appointment_hours if config else DEFAULT_DURATION_HOURS

    original_start = modified.start
    original_duration = _duration(modified, default_hours)
    original_end = original_start + timedelta(hours=original_duration)
    new_end = new_start + timedelta(hours=new_duration)
    delta_minutes = round((new_end - original_end).total_seconds() / 60)
    delta = timedelta(minutes=delta_minutes)

    day = original_start.date()
    business_close = datetime.combine(day, time(close_hour, 0), tzinfo=original_start.tzinfo)

    changes = [
        CascadeChange(
            modified,
            original_start,
            original_duration,
            new_start,
            new_duration,
            delta_minutes,
            "Primary change",
        )
    ]
    conflicts: list[CascadeConflict] = []
    affected_clients: list[str] = []
    if modified.client:
        affected_clients.append(modified.client)

    same_day = [
        a for a in appointments
        if a.id != modified.id and a.status != "completed" and a.start.date() == day
    ]
    to_move = sorted((a for a in same_day if a.start >= original_end), key=lambda a: a.start)
    moved_ids = {a.id for a in to_move}
    unmoved = [a for a in same_day if a.id not in moved_ids]

    # The modified appointment's new window against appointments that stay put
    for other in unmoved:
        members = _shared_crew(modified, other)
        other_end = other.start + timedelta(hours=_duration(other, default_hours))
        if members and _overlaps(new_start, new_end, other.start, other_end):
            conflicts.append(CascadeConflict(
                modified, other,
                f"Team member(s) {', '.join(members)} cannot be in two places at once",
            ))

    for appointment in to_move:
        duration = _duration(appointment, default_hours)
        shifted_start = appointment.start + delta
        shifted_end = shifted_start + timedelta(hours=duration)

        changes.append(CascadeChange(
            appointment,
            appointment.start,
            duration,
            shifted_start,
            duration,
            delta_minutes,
            f"Cascaded from {modified.client or 'previous appointment'}",
        ))
        if appointment.client and appointment.client not in affected_clients:
            affected_clients.append(appointment.client)

        if shifted_end > business_close:
            conflicts.append(CascadeConflict(
                appointment, modified,
                f"{appointment.client or 'Appointment'} pushed past business hours "
                f"(ends at {_format_clock(shifted_end)})",
            ))

        windows = [(modified, new_start, new_end)] + [
            (other, other.start, other.start + timedelta(hours=_duration(other, default_hours)))
            for other in unmoved
        ]
        for other, other_start, other_end in windows:
            members = _shared_crew(appointment, other)
            if members and _overlaps(shifted_start, shifted_end, other_start, other_end):
                conflicts.append(CascadeConflict(
                    appointment, other,
                    f"Team member(s) {', '.join(members)} cannot be in two places at once",
                ))

    summary = generate_cascade_summary(changes, conflicts)
    return CascadeResult(changes, conflicts, affected_clients, summary, delta_minutes)


def _format_hours(hours: float) -> str:
    return f"{hours:g}h"


def generate_cascade_summary(changes: list[CascadeChange], conflicts: list[CascadeConflict]) -> str:
    """Multi-line human-readable description of a cascade plan."""
    if not changes:
        return "No changes required."

    primary = changes[0]
    cascaded = changes[1:]
    start_delta = round((primary.new_start - primary.original_start).total_seconds() / 60)
    duration_changed = primary.new_duration != primary.original_duration

    parts = []
    if start_delta:
        direction = "later" if start_delta > 0 else "earlier"
        parts.append(f"moved {direction} by {abs(start_delta)} min")
    if duration_changed:
        parts.append(
            f"duration changed from {_format_hours(primary.original_duration)} "
            f"to {_format_hours(primary.new_duration)}"
        )
    summary = f"{primary.appointment.client or 'Appointment'}: {' and '.join(parts) or 'no time change'}"

    if cascaded:
        plural = "s" if len(cascaded) > 1 else ""
        summary += f"\n\nAffected {len(cascaded)} subsequent appointment{plural}:"
        for change in cascaded:
            direction = "later" if change.delta_minutes > 0 else "earlier"
            summary += f"\n• {change.appointment.client or 'Appointment'}: {abs(change.delta_minutes)} min {direction}"

    if conflicts:
        plural = "s" if len(conflicts) > 1 else ""
        summary += f"\n\n⚠️ {len(conflicts)} conflict{plural} detected:"
        for conflict in conflicts:
            summary += f"\n• {conflict.reason}"

    return summary


def calculate_duration_for_team_change(
    original_duration: float,
    original_team_size: int,
    new_team_size: int,
) -> float:
    """
    Scale a job's duration to a new crew size, rounded to the nearest half hour.
    new = original * (original_team / new_team)
    """
    if new_team_size <= 0:
        return original_duration
    scaled = original_duration * original_team_size / new_team_size
    return math.floor(scaled * 2 + 0.5) / 2


def generate_client_notification(client: str, change: CascadeChange, reason: str) -> str:
    """Text to the client of a moved appointment."""
    new_time = _format_clock(change.new_start)
    lowered = reason.lower()

    if "team size" in lowered or "cleaner" in lowered or "staff" in lowered:
        return (
            f"Hi {client}, we need to adjust your appointment time. Due to a staffing change, "
            f"your cleaning will now arrive at {new_time}. The same great service is guaranteed. "
            "Please reply if you need a different time."
        )
    if change.delta_minutes > 0:
        return (
            f"Hi {client}, your appointment has been moved slightly later to {new_time} "
            "due to a schedule adjustment. Please reply if you need a different time."
        )
    return (
        f"Hi {client}, good news! We're able to arrive earlier at {new_time}. "
        "Please reply if the original time works better for you."
    )
