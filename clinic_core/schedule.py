"""Weekly doctor schedule -> bookable slots for one calendar date.

Pure functions only: callers fetch schedules and appointments fresh and call
``compute_slots`` again for every screen, nothing is cached here.
"""
from __future__ import annotations

import datetime as dt
import re
from typing import Iterable

from .errors import ConfigurationError, ValidationError
from .models import Appointment, AvailableSlot, DayOfWeek, DoctorSchedule

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")


def parse_time(value: str) -> int:
    """Return minutes after midnight for ``HH:MM`` (seconds are tolerated)."""
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise ValidationError(f"Time must be in HH:MM format, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> str:
    """``9:5`` style inputs are rejected, ``9:05`` and ``09:05:00`` become ``09:05``."""
    return format_time(parse_time(value))


def active_schedule_for(schedules: Iterable[DoctorSchedule], day: dt.date) -> DoctorSchedule | None:
    """Pick the single active entry for the weekday of ``day``.

    Two active entries for the same weekday are refused instead of guessing
    which one wins.
    """
    weekday = DayOfWeek.for_date(day)
    matches = [s for s in schedules if s.day_of_week == weekday and s.is_active]
    if len(matches) > 1:
        doctor_ids = {s.doctor_id for s in matches}
        raise ConfigurationError(
            f"{len(matches)} active schedules for {weekday.value} (doctor {', '.join(sorted(doctor_ids))})"
        )
    return matches[0] if matches else None


def slot_times(schedule: DoctorSchedule) -> list[str]:
    """Start times of every whole slot between the schedule's start and end."""
    if schedule.slot_duration <= 0:
        raise ConfigurationError(f"Slot duration must be positive, got {schedule.slot_duration}")
    start = parse_time(schedule.start_time)
    end = parse_time(schedule.end_time)
    if start >= end:
        raise ConfigurationError(f"Schedule start {schedule.start_time} is not before end {schedule.end_time}")

    times = []
    current = start
    # a trailing partial slot is dropped
    while current + schedule.slot_duration <= end:
        times.append(format_time(current))
        current += schedule.slot_duration
    return times


def booked_times(appointments: Iterable[Appointment], day: dt.date, doctor_id: str | None = None) -> set[str]:
    """Times on ``day`` held by appointments that were not cancelled or rejected."""
    taken = set()
    for appt in appointments:
        if appt.date != day or not appt.holds_slot:
            continue
        if doctor_id is not None and appt.doctor_id != doctor_id:
            continue
        taken.add(normalize_time(appt.time))
    return taken


def compute_slots(
    schedules: Iterable[DoctorSchedule],
    day: dt.date,
    existing_appointments: Iterable[Appointment] = (),
    doctor_id: str | None = None,
) -> list[AvailableSlot]:
    """Ordered slots for ``day``; empty when the doctor does not work that weekday."""
    schedule = active_schedule_for(list(schedules), day)
    if schedule is None:
        return []
    taken = booked_times(existing_appointments, day, doctor_id or schedule.doctor_id)
    return [AvailableSlot(time=t, is_available=t not in taken) for t in slot_times(schedule)]


def is_slot_bookable(slots: Iterable[AvailableSlot], time: str) -> bool:
    wanted = normalize_time(time)
    return any(slot.time == wanted and slot.is_available for slot in slots)
