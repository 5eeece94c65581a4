#!/usr/bin/env python3
"""
irrigator.py

Irrigation scheduling engine for the farm dashboard.  It keeps one
global watering window plus optional per-field windows, decides whether
"now" falls inside a window (including windows that cross midnight),
reconciles that with manual valve overrides and drives each field's
valve between Off, On and Auto.  Every session it opens is written to the
watering log and every state change is reported to a notification sink.

Key features:

  • Fields with an enabled individual schedule follow only that schedule.
    Every other field follows the global schedule when it is enabled.
  • Schedule transitions are edge-triggered: a window opening produces a
    single engagement (one log entry, one valve change) no matter how
    many ticks fall inside it.
  • Manual valve requests are rejected while the governing schedule is
    active, with a field-scoped explanation.
  • Field and watering-log data live in the REST backend (``/api/fields``
    and ``/api/watering-logs``).  Without a backend URL an in-memory demo
    farm is used instead.
  • APScheduler runs the reconciliation tick (60 s) and the telemetry
    refresh (30 s).  A JSON API (Flask) and a CLI sit on top.

See the bottom of this file for a concise usage manual.
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask, jsonify, request

log = logging.getLogger("irrigator")

# Path to our persistent configuration.  It lives next to this script
# unless IRRIGATOR_CONFIG points somewhere else.
CONFIG_PATH = os.environ.get("IRRIGATOR_CONFIG") or os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "config.json"
)
# Re-entrant lock guarding the config dict and its file.
LOCK = threading.RLock()

# ---------- Default Config ----------
#
# `backend.url` selects the REST stores; leave it null to run against
# the in-memory demo farm.  Individual field schedules are not a backend
# concept, so they are kept here under `schedules`, keyed by field id.

DEFAULT_CONFIG = {
    "backend": {"url": None, "timeout": 10},
    "global_schedule": {"start": "21:00", "end": "23:00", "enabled": False},
    "schedules": {},
    # engage_mode: valve mode forced while a schedule window is open
    # (auto or on).  disengage_mode: mode the valve reverts to when the
    # window closes or the schedule is cancelled (auto or off).
    "policy": {
        "engage_mode": "auto",
        "disengage_mode": "auto",
        "default_duration_minutes": 30,
    },
    # Soil moisture percentages.  Below critical always alerts; below
    # low alerts only for fields in Auto mode.
    "alerts": {"critical_moisture": 30, "low_moisture": 45},
    "timers": {"tick_seconds": 60, "refresh_seconds": 30},
    "notifications": {"webhook_url": None},
    "web": {"host": "0.0.0.0", "port": 8000},
}

MIN_SESSION = timedelta(minutes=1)
MAX_NOTIFICATIONS = 50


# =========================
# Errors
# =========================

class IrrigationError(Exception):
    """Base class for everything the engine raises on purpose."""


class InvalidSchedule(IrrigationError):
    """A schedule failed validation (bad time, or start equal to end)."""


class ScheduleConflict(IrrigationError):
    """Manual control was attempted while the governing schedule is active."""

    def __init__(self, field_id: str, schedule: Optional["Schedule"] = None,
                 field_name: Optional[str] = None, is_global: bool = False):
        self.field_id = field_id
        self.schedule = schedule
        scope = "global schedule" if is_global else "schedule"
        window = f" {schedule.label}" if schedule is not None else ""
        super().__init__(
            f"Cannot control valve for {field_name or field_id}: "
            f"governed by active {scope}{window}"
        )


class FieldNotFound(IrrigationError):
    def __init__(self, field_id: str):
        self.field_id = field_id
        super().__init__(f"Field with ID {field_id} not found")


class SinkDeliveryFailure(IrrigationError):
    """A notification could not be delivered.  Logged, never propagated."""


class PersistenceFailure(IrrigationError):
    """A store read or write failed."""


# =========================
# Clock
# =========================

class Clock:
    """Local wall clock.  Everything time-dependent asks a Clock for now()."""

    def now(self) -> datetime:
        return datetime.now()


class ManualClock(Clock):
    """A clock that only moves when told to (tests and simulations)."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


# =========================
# Schedules
# =========================

def parse_time_str(t: str) -> time:
    """Parse an HH:MM (24h) string.  One or two digit hours are accepted,
    e.g. 6:30, 06:30 and 18:05 are all valid."""
    if not isinstance(t, str):
        raise InvalidSchedule("Times must be HH:MM (24h)")
    parts = t.strip().split(":")
    if len(parts) != 2:
        raise InvalidSchedule(f"Bad time format: {t!r}")
    hour, minute = parts
    if not (hour.isdigit() and 1 <= len(hour) <= 2 and minute.isdigit() and len(minute) == 2):
        raise InvalidSchedule(f"Bad time format: {t!r}")
    h, m = int(hour), int(minute)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise InvalidSchedule(f"Bad time value: {t!r}")
    return time(h, m)


@dataclass(frozen=True)
class Schedule:
    """A daily watering window.

    Only the hour and minute of `start` and `end` matter.  When `end` is
    earlier than `start` the window wraps past midnight.  A zero-length
    window (start == end) is ambiguous and rejected at construction.
    """

    start: time
    end: time
    enabled: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.start, time) or not isinstance(self.end, time):
            raise InvalidSchedule("Schedule start and end must be times of day")
        if (self.start.hour, self.start.minute) == (self.end.hour, self.end.minute):
            raise InvalidSchedule(
                f"Start time and end time cannot be the same ({self.start:%H:%M})"
            )

    @classmethod
    def parse(cls, start: str, end: str, enabled: bool = True) -> "Schedule":
        return cls(parse_time_str(start), parse_time_str(end), bool(enabled))

    @classmethod
    def from_dict(cls, data: dict) -> "Schedule":
        if not isinstance(data, dict):
            raise InvalidSchedule("Schedule must be an object with start and end")
        if not data.get("start") or not data.get("end"):
            raise InvalidSchedule("Missing start/end times")
        return cls.parse(data["start"], data["end"], data.get("enabled", True))

    @property
    def wraps_midnight(self) -> bool:
        return minutes_since_midnight(self.end) < minutes_since_midnight(self.start)

    @property
    def label(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"

    def disabled(self) -> "Schedule":
        return dataclasses.replace(self, enabled=False)

    def as_dict(self) -> dict:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "enabled": self.enabled,
        }


def minutes_since_midnight(t) -> int:
    """Return minutes since midnight for a time or datetime."""
    return t.hour * 60 + t.minute


def is_active(schedule: Optional[Schedule], now: datetime) -> bool:
    """Decide whether `now` falls inside the schedule's window.

    Both ends are inclusive.  A disabled (or missing) schedule is never
    active.
    """
    if schedule is None or not schedule.enabled:
        return False
    m = minutes_since_midnight(now)
    s = minutes_since_midnight(schedule.start)
    e = minutes_since_midnight(schedule.end)
    if s <= e:
        return s <= m <= e
    return m >= s or m <= e


def window_bounds(schedule: Schedule, now: datetime) -> Tuple[datetime, datetime]:
    """Return the absolute (start, end) of the window containing `now`,
    or of the next window when `now` is outside it."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    m = minutes_since_midnight(now)
    s = minutes_since_midnight(schedule.start)
    e = minutes_since_midnight(schedule.end)
    start = day + timedelta(minutes=s)
    end = day + timedelta(minutes=e)
    if s <= e:
        if m > e:
            start += timedelta(days=1)
            end += timedelta(days=1)
    elif m <= e:
        # After midnight: the window opened yesterday evening.
        start -= timedelta(days=1)
    else:
        end += timedelta(days=1)
    return start, end


# =========================
# Data model
# =========================

class ValveMode(str, Enum):
    OFF = "off"
    ON = "on"
    AUTO = "auto"


class WateringMethod(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    SCHEDULED = "scheduled"


class ScheduleDecision(Enum):
    ENGAGE = "engage"
    DISENGAGE = "disengage"


@dataclass
class Field:
    """An irrigable unit, as loaded from the field store.

    Telemetry (soil_moisture, temperature, health) is read-only input;
    the engine never changes it.
    """

    id: str
    name: str = ""
    area: float = 1.0
    crop_type: str = "Unknown"
    valve_mode: ValveMode = ValveMode.OFF
    individual_schedule: Optional[Schedule] = None
    soil_moisture: Optional[float] = None
    temperature: Optional[float] = None
    health: Optional[str] = None
    last_watered: Optional[datetime] = None

    def __post_init__(self):
        self.id = str(self.id)
        self.valve_mode = ValveMode(self.valve_mode)
        if self.area is None or float(self.area) <= 0:
            raise ValueError(f"Field {self.id}: area must be a positive number of hectares")
        self.area = float(self.area)
        if not self.name:
            self.name = f"Field {self.id}"

    def as_dict(self) -> dict:
        schedule = self.individual_schedule
        return {
            "id": self.id,
            "name": self.name,
            "area": self.area,
            "crop_type": self.crop_type,
            "valve_mode": self.valve_mode.value,
            "schedule": schedule.as_dict() if schedule else None,
            "soil_moisture": self.soil_moisture,
            "temperature": self.temperature,
            "health": self.health,
            "last_watered": self.last_watered.isoformat() if self.last_watered else None,
        }


@dataclass(frozen=True)
class WateringLogEntry:
    """One irrigation session.  Immutable; stores hand back new values."""

    field_id: str
    start_time: datetime
    end_time: datetime
    method: WateringMethod
    id: Optional[str] = None

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("Watering log end time must be after its start time")

    @property
    def duration(self) -> int:
        """Session length in whole minutes."""
        return round((self.end_time - self.start_time).total_seconds() / 60)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "field_id": self.field_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "method": self.method.value,
            "duration": self.duration,
        }


class EventKind(str, Enum):
    SCHEDULE_ENGAGED = "schedule_engaged"
    SCHEDULE_DISENGAGED = "schedule_disengaged"
    VALVE_CHANGED = "valve_changed"
    MANUAL_CONTROL_REJECTED = "manual_control_rejected"
    LOW_MOISTURE_ALERT = "low_moisture_alert"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    field_id: Optional[str]
    at: datetime
    message: str
    mode: Optional[ValveMode] = None
    previous_mode: Optional[ValveMode] = None
    severity: str = "info"
    log_entry: Optional[WateringLogEntry] = None
    schedule: Optional[Schedule] = None

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "field_id": self.field_id,
            "at": self.at.isoformat(),
            "message": self.message,
            "mode": self.mode.value if self.mode else None,
            "previous_mode": self.previous_mode.value if self.previous_mode else None,
            "severity": self.severity,
            "log_entry": self.log_entry.as_dict() if self.log_entry else None,
            "schedule": self.schedule.as_dict() if self.schedule else None,
        }


# =========================
# Valve state machine
# =========================

@dataclass
class SchedulePolicy:
    """Policy knobs for engine-driven transitions."""

    engage_mode: ValveMode = ValveMode.AUTO
    disengage_mode: ValveMode = ValveMode.AUTO
    default_duration_minutes: int = 30

    def __post_init__(self):
        self.engage_mode = ValveMode(self.engage_mode)
        self.disengage_mode = ValveMode(self.disengage_mode)
        if self.engage_mode is ValveMode.OFF:
            raise ValueError("engage_mode must be 'on' or 'auto'")
        if self.disengage_mode is ValveMode.ON:
            raise ValueError("disengage_mode must be 'auto' or 'off'")
        if int(self.default_duration_minutes) <= 0:
            raise ValueError("default_duration_minutes must be positive")

    @classmethod
    def from_config(cls, cfg: dict) -> "SchedulePolicy":
        p = cfg.get("policy", {})
        return cls(
            engage_mode=p.get("engage_mode", "auto"),
            disengage_mode=p.get("disengage_mode", "auto"),
            default_duration_minutes=int(p.get("default_duration_minutes", 30)),
        )


@dataclass(frozen=True)
class Transition:
    field_id: str
    previous: ValveMode
    mode: ValveMode
    method: WateringMethod

    @property
    def opens_session(self) -> bool:
        """True when the valve moves into On or Auto from another mode."""
        return self.mode in (ValveMode.ON, ValveMode.AUTO) and self.mode is not self.previous


class ValveController:
    """Per-field valve state machine (Off / On / Auto).

    The controller only proposes transitions.  The engine persists them
    and then calls commit(); until then the mode is unchanged, so a
    failed write leaves nothing to roll back in memory.
    """

    def __init__(self, field_id: str, mode: ValveMode = ValveMode.OFF,
                 policy: Optional[SchedulePolicy] = None, name: Optional[str] = None):
        self.field_id = field_id
        self.mode = ValveMode(mode)
        self.policy = policy or SchedulePolicy()
        self.name = name or field_id

    def request_manual(self, mode: ValveMode, governing_active: bool,
                       schedule: Optional[Schedule] = None,
                       is_global: bool = False) -> Optional[Transition]:
        if governing_active:
            raise ScheduleConflict(self.field_id, schedule, self.name, is_global)
        mode = ValveMode(mode)
        if mode is self.mode:
            return None
        method = WateringMethod.AUTO if mode is ValveMode.AUTO else WateringMethod.MANUAL
        return Transition(self.field_id, self.mode, mode, method)

    def apply_schedule(self, decision: ScheduleDecision) -> Optional[Transition]:
        if decision is ScheduleDecision.ENGAGE:
            target = self.policy.engage_mode
            method = WateringMethod.SCHEDULED
        else:
            target = self.policy.disengage_mode
            method = WateringMethod.AUTO
        if target is self.mode:
            return None
        return Transition(self.field_id, self.mode, target, method)

    def commit(self, transition: Transition) -> None:
        self.mode = transition.mode

    def sync(self, mode: ValveMode, name: Optional[str] = None) -> None:
        """Adopt the mode reported by the store snapshot."""
        self.mode = ValveMode(mode)
        if name:
            self.name = name


# =========================
# Stores (external collaborators)
# =========================

class FieldStore(Protocol):
    def list_fields(self) -> List[Field]:
        ...

    def update_valve_mode(self, field_id: str, mode: ValveMode) -> Optional[Field]:
        ...

    def update_schedule(self, field_id: str, schedule: Optional[Schedule]) -> None:
        ...


class WateringLogStore(Protocol):
    def append(self, entry: WateringLogEntry) -> WateringLogEntry:
        ...

    def list_by_field(self, field_id: str) -> List[WateringLogEntry]:
        ...

    def close(self, entry_id: str, end_time: datetime) -> WateringLogEntry:
        ...


class InMemoryFieldStore:
    """Field store kept in process memory (demo mode and tests)."""

    def __init__(self, fields: Iterable[Field] = ()):
        self._fields: Dict[str, Field] = {f.id: f for f in fields}

    def list_fields(self) -> List[Field]:
        return [dataclasses.replace(f) for f in self._fields.values()]

    def _require(self, field_id: str) -> Field:
        try:
            return self._fields[str(field_id)]
        except KeyError:
            raise FieldNotFound(str(field_id)) from None

    def add(self, field: Field) -> Field:
        self._fields[field.id] = field
        return field

    def update_valve_mode(self, field_id: str, mode: ValveMode) -> Field:
        updated = dataclasses.replace(self._require(field_id), valve_mode=ValveMode(mode))
        self._fields[updated.id] = updated
        return updated

    def update_schedule(self, field_id: str, schedule: Optional[Schedule]) -> None:
        updated = dataclasses.replace(self._require(field_id), individual_schedule=schedule)
        self._fields[updated.id] = updated


class InMemoryWateringLogStore:
    def __init__(self):
        self._entries: List[WateringLogEntry] = []

    def append(self, entry: WateringLogEntry) -> WateringLogEntry:
        stored = dataclasses.replace(entry, id=entry.id or uuid.uuid4().hex)
        self._entries.append(stored)
        return stored

    def list_by_field(self, field_id: str) -> List[WateringLogEntry]:
        entries = [e for e in self._entries if e.field_id == str(field_id)]
        return sorted(entries, key=lambda e: e.start_time, reverse=True)

    def close(self, entry_id: str, end_time: datetime) -> WateringLogEntry:
        for i, entry in enumerate(self._entries):
            if entry.id == entry_id:
                closed = dataclasses.replace(entry, end_time=end_time)
                self._entries[i] = closed
                return closed
        raise PersistenceFailure(f"Watering log {entry_id} not found")


def demo_fields() -> List[Field]:
    """Sample farm used when no backend is configured."""
    return [
        Field("1", "North Field", 2.5, "Tomatoes", ValveMode.OFF, soil_moisture=45, temperature=28, health="good"),
        Field("2", "South Field", 4.2, "Wheat", ValveMode.AUTO, soil_moisture=65, temperature=26, health="excellent"),
        Field("3", "East Garden", 1.8, "Potatoes", ValveMode.OFF, soil_moisture=30, temperature=24, health="fair"),
    ]


# ---------- Backend boundary ----------
#
# The backend speaks "On"/"Off"/"Auto" for valves and SPRINKLER/DRIP/FLOOD
# for watering methods.  These are translated here and nowhere else.

VALVE_BACKEND_NAMES = {ValveMode.OFF: "Off", ValveMode.ON: "On", ValveMode.AUTO: "Auto"}
BACKEND_METHODS = {
    WateringMethod.MANUAL: "SPRINKLER",
    WateringMethod.AUTO: "DRIP",
    WateringMethod.SCHEDULED: "SPRINKLER",
}
BACKEND_METHOD_FALLBACK = {
    "SPRINKLER": WateringMethod.MANUAL,
    "DRIP": WateringMethod.AUTO,
    "FLOOD": WateringMethod.MANUAL,
}


def parse_valve_mode(value) -> ValveMode:
    """Map any backend valve representation to a ValveMode.

    Strings are matched case-insensitively; legacy boolean values map to
    On/Off.  Anything unrecognised is treated as Off.
    """
    if isinstance(value, ValveMode):
        return value
    if isinstance(value, str):
        try:
            return ValveMode(value.strip().lower())
        except ValueError:
            return ValveMode.OFF
    return ValveMode.ON if value else ValveMode.OFF


def valve_mode_to_backend(mode: ValveMode) -> str:
    return VALVE_BACKEND_NAMES[ValveMode(mode)]


def parse_watering_method(method, operation_type=None) -> WateringMethod:
    if isinstance(operation_type, str):
        try:
            return WateringMethod(operation_type.strip().lower())
        except ValueError:
            pass
    if isinstance(method, str):
        normalized = method.strip()
        try:
            return WateringMethod(normalized.lower())
        except ValueError:
            return BACKEND_METHOD_FALLBACK.get(normalized.upper(), WateringMethod.MANUAL)
    return WateringMethod.MANUAL


def _to_backend_ts(dt: datetime) -> str:
    return dt.astimezone().isoformat(timespec="seconds")


def _from_backend_ts(value) -> Optional[datetime]:
    """Parse an ISO timestamp into naive local time (the engine's clock)."""
    if not value:
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def _backend_id(value: str):
    return int(value) if str(value).isdigit() else value


def _number(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def field_from_backend(rec: dict, schedule: Optional[Schedule] = None) -> Field:
    crop = rec.get("crop") if isinstance(rec.get("crop"), dict) else {}
    logs = rec.get("water_logs") or []
    last = logs[0].get("end_time") if logs else rec.get("updated_at")
    return Field(
        id=str(rec["id"]),
        name=rec.get("name") or "",
        area=float(rec.get("surface")),
        crop_type=rec.get("crop_name") or crop.get("name") or "Unknown",
        valve_mode=parse_valve_mode(rec.get("valve_state")),
        individual_schedule=schedule,
        soil_moisture=_number(rec.get("moisture")),
        temperature=_number(rec.get("temperature")),
        health=rec.get("condition"),
        last_watered=_from_backend_ts(last),
    )


def entry_from_backend(rec: dict) -> WateringLogEntry:
    return WateringLogEntry(
        field_id=str(rec["field_id"]),
        start_time=_from_backend_ts(rec["start_time"]),
        end_time=_from_backend_ts(rec["end_time"]),
        method=parse_watering_method(rec.get("method"), rec.get("operation_type")),
        id=str(rec["id"]) if rec.get("id") is not None else None,
    )


class BackendClient:
    """Minimal JSON client for the dashboard backend (``{url}/api``)."""

    HEADERS = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": "irrigator/1.0",
    }

    def __init__(self, base_url: str, timeout: float = 10, session=None):
        self.api_url = base_url.rstrip("/") + "/api"
        self.timeout = timeout
        self.session = session or requests.Session()

    def request(self, method: str, endpoint: str, payload=None, params=None):
        url = f"{self.api_url}{endpoint}"
        log.debug("%s %s", method, url)
        try:
            resp = self.session.request(
                method, url, json=payload, params=params,
                headers=self.HEADERS, timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PersistenceFailure(f"{method} {endpoint} failed: {e}") from e
        if not resp.ok:
            raise PersistenceFailure(f"{method} {endpoint} failed: {self._error_message(resp)}")
        # 204 No Content (deletes, some updates)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise PersistenceFailure(f"{method} {endpoint} returned invalid JSON") from e

    @staticmethod
    def _error_message(resp) -> str:
        message = f"HTTP error! status: {resp.status_code}"
        try:
            data = resp.json()
        except ValueError:
            return message
        if not isinstance(data, dict):
            return message
        errors = data.get("errors")
        if isinstance(errors, dict) and errors:
            details = []
            for name, msgs in errors.items():
                if isinstance(msgs, list):
                    msgs = ", ".join(str(m) for m in msgs)
                details.append(f"{name}: {msgs}")
            return "Validation Error: " + "; ".join(details)
        if data.get("message"):
            return str(data["message"])
        return message


def _unwrap_list(data) -> list:
    # Paginated backend responses wrap the rows in {"data": [...]}
    if isinstance(data, dict):
        data = data.get("data", [])
    return data if isinstance(data, list) else []


class RestFieldStore:
    """Fields from the REST backend, with individual schedules from config."""

    def __init__(self, client: BackendClient, cfg: dict):
        self.client = client
        self.cfg = cfg

    def _schedule_for(self, field_id: str) -> Optional[Schedule]:
        data = self.cfg.get("schedules", {}).get(str(field_id))
        if data is None:
            return None
        try:
            return Schedule.from_dict(data)
        except InvalidSchedule as e:
            log.warning("Ignoring stored schedule for field %s: %s", field_id, e)
            return None

    def list_fields(self) -> List[Field]:
        fields = []
        for rec in _unwrap_list(self.client.request("GET", "/fields")):
            try:
                fields.append(field_from_backend(rec, self._schedule_for(rec.get("id"))))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed field record %r: %s", rec.get("id"), e)
        return fields

    def update_valve_mode(self, field_id: str, mode: ValveMode) -> Optional[Field]:
        rec = self.client.request(
            "PUT", f"/fields/{field_id}", {"valve_state": valve_mode_to_backend(mode)}
        )
        if isinstance(rec, dict) and "id" in rec:
            return field_from_backend(rec, self._schedule_for(field_id))
        return None

    def update_schedule(self, field_id: str, schedule: Optional[Schedule]) -> None:
        with LOCK:
            schedules = self.cfg.setdefault("schedules", {})
            if schedule is None:
                schedules.pop(str(field_id), None)
            else:
                schedules[str(field_id)] = schedule.as_dict()
            try:
                save_config(self.cfg)
            except OSError as e:
                raise PersistenceFailure(f"Could not save schedule for field {field_id}: {e}") from e


class RestWateringLogStore:
    def __init__(self, client: BackendClient):
        self.client = client

    def append(self, entry: WateringLogEntry) -> WateringLogEntry:
        rec = self.client.request("POST", "/watering-logs", {
            "field_id": _backend_id(entry.field_id),
            "start_time": _to_backend_ts(entry.start_time),
            "end_time": _to_backend_ts(entry.end_time),
            "method": BACKEND_METHODS[entry.method],
            "operation_type": entry.method.value,
        })
        if isinstance(rec, dict) and "id" in rec:
            return dataclasses.replace(entry, id=str(rec["id"]))
        raise PersistenceFailure("Backend did not return the created watering log")

    def list_by_field(self, field_id: str) -> List[WateringLogEntry]:
        data = self.client.request("GET", "/watering-logs", params={"field_id": field_id})
        entries = []
        for rec in _unwrap_list(data):
            try:
                entries.append(entry_from_backend(rec))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed watering log %r: %s", rec.get("id"), e)
        return entries

    def close(self, entry_id: str, end_time: datetime) -> WateringLogEntry:
        rec = self.client.request(
            "PUT", f"/watering-logs/{entry_id}", {"end_time": _to_backend_ts(end_time)}
        )
        if not isinstance(rec, dict):
            raise PersistenceFailure(f"Backend did not return watering log {entry_id}")
        try:
            return entry_from_backend(rec)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Malformed watering log {entry_id}: {e}") from e


# =========================
# Watering log recorder
# =========================

class WateringLogRecorder:
    """Appends watering-log entries and tracks each field's open session.

    A session is written when it starts, with an estimated end (the
    schedule window's end or the default duration).  Cutting a session
    short asks the store to close the entry at the stop time.
    """

    def __init__(self, store: WateringLogStore, default_duration_minutes: int = 30):
        self.store = store
        self.default_duration = timedelta(minutes=default_duration_minutes)
        self._open: Dict[str, WateringLogEntry] = {}

    def record(self, field_id: str, start_time: datetime, end_time: datetime,
               method: WateringMethod) -> WateringLogEntry:
        entry = WateringLogEntry(str(field_id), start_time, end_time, WateringMethod(method))
        return self.store.append(entry)

    def start_session(self, field_id: str, method: WateringMethod, start: datetime,
                      end: Optional[datetime] = None) -> WateringLogEntry:
        field_id = str(field_id)
        self.close_session(field_id, start)
        if end is None:
            end = start + self.default_duration
        end = max(end, start + MIN_SESSION)
        entry = self.record(field_id, start, end, method)
        self._open[field_id] = entry
        return entry

    def close_session(self, field_id: str, at: datetime) -> Optional[WateringLogEntry]:
        field_id = str(field_id)
        entry = self._open.pop(field_id, None)
        if entry is None:
            return None
        end = max(at, entry.start_time + MIN_SESSION)
        if end >= entry.end_time:
            # Ran its full course already.
            return entry
        try:
            return self.store.close(entry.id, end)
        except PersistenceFailure:
            self._open[field_id] = entry
            raise

    def resume_session(self, entry: WateringLogEntry) -> None:
        """Track an entry written by an earlier process as the open session."""
        self._open[entry.field_id] = entry

    def open_session(self, field_id: str) -> Optional[WateringLogEntry]:
        return self._open.get(str(field_id))

    def history(self, field_id: str) -> List[WateringLogEntry]:
        return self.store.list_by_field(str(field_id))


# =========================
# Notification sinks
# =========================

class NotificationSink(Protocol):
    def emit(self, event: EngineEvent) -> None:
        ...


NOTIFICATION_STYLES = {
    EventKind.SCHEDULE_ENGAGED: ("success", "Irrigation Schedule Engaged"),
    EventKind.SCHEDULE_DISENGAGED: ("info", "Scheduled Watering Finished"),
    EventKind.VALVE_CHANGED: ("info", "Valve Changed"),
    EventKind.MANUAL_CONTROL_REJECTED: ("warning", "Manual Control Blocked"),
    EventKind.LOW_MOISTURE_ALERT: ("warning", "Low Soil Moisture Alert"),
}


class NotificationCenter:
    """In-process notification feed consumed by the dashboard API.

    Keeps the newest 50 notifications with read/unread state and calls
    subscribers with the current list on every change.
    """

    def __init__(self):
        self._items: List[dict] = []
        self._listeners: List[Callable[[List[dict]], None]] = []
        self._lock = threading.Lock()

    def emit(self, event: EngineEvent) -> None:
        kind, title = NOTIFICATION_STYLES[event.kind]
        if event.kind is EventKind.LOW_MOISTURE_ALERT and event.severity == "critical":
            kind, title = "critical", "Critical Soil Moisture"
        self.add({
            "type": kind,
            "title": title,
            "message": event.message,
            "field_id": event.field_id,
            "event": event.kind.value,
            "timestamp": event.at.isoformat(),
        })

    def add(self, notification: dict) -> str:
        item = {"id": uuid.uuid4().hex, "read": False, **notification}
        with self._lock:
            self._items.insert(0, item)
            del self._items[MAX_NOTIFICATIONS:]
        self._notify()
        return item["id"]

    def notifications(self) -> List[dict]:
        with self._lock:
            return [dict(n) for n in self._items]

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for n in self._items if not n["read"])

    def mark_read(self, notification_id: str) -> bool:
        with self._lock:
            found = False
            for n in self._items:
                if n["id"] == notification_id:
                    n["read"] = True
                    found = True
        if found:
            self._notify()
        return found

    def mark_all_read(self) -> None:
        with self._lock:
            for n in self._items:
                n["read"] = True
        self._notify()

    def delete(self, notification_id: str) -> bool:
        with self._lock:
            before = len(self._items)
            self._items = [n for n in self._items if n["id"] != notification_id]
            removed = len(self._items) != before
        if removed:
            self._notify()
        return removed

    def subscribe(self, callback: Callable[[List[dict]], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        items = self.notifications()
        for callback in list(self._listeners):
            callback(items)


class WebhookSink:
    """POSTs each event as JSON to an HTTP endpoint."""

    def __init__(self, url: str, timeout: float = 10, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def emit(self, event: EngineEvent) -> None:
        try:
            resp = self.session.post(self.url, json=event.as_dict(), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SinkDeliveryFailure(f"Webhook {self.url} rejected {event.kind.value}: {e}") from e


class FanOutSink:
    """Delivers every event to each sink; one failing sink does not stop the rest."""

    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    def emit(self, event: EngineEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                log.warning("Notification sink %s failed: %s", type(sink).__name__, e)


# =========================
# Scheduling engine
# =========================

class SchedulingEngine:
    """Reconciles every field's valve with its governing schedule.

    The governing schedule is the field's individual schedule when that
    is enabled, otherwise the global schedule when that is enabled,
    otherwise nothing (manual control only).  Evaluation is
    edge-triggered: the engine remembers which schedule engaged each
    field and only acts when that changes.

    All public operations hold one re-entrant lock, so the
    evaluate -> transition -> record -> notify sequence for a field is
    never interleaved with another tick or a manual request.
    """

    def __init__(self, store: FieldStore, recorder: WateringLogRecorder,
                 sink: Optional[NotificationSink] = None, clock: Optional[Clock] = None,
                 global_schedule: Optional[Schedule] = None,
                 policy: Optional[SchedulePolicy] = None,
                 critical_moisture: float = 30, low_moisture: float = 45):
        self.store = store
        self.recorder = recorder
        self.sink = sink
        self.clock = clock or Clock()
        self.policy = policy or SchedulePolicy()
        self.critical_moisture = critical_moisture
        self.low_moisture = low_moisture
        self._global = global_schedule
        self._lock = threading.RLock()
        self._fields: Dict[str, Field] = {}
        self._valves: Dict[str, ValveController] = {}
        # field id -> schedule that engaged it (absent when not engaged)
        self._engaged: Dict[str, Schedule] = {}
        self._moisture_level: Dict[str, Optional[str]] = {}
        self._loaded = False

    # ---------- snapshot ----------

    @property
    def global_schedule(self) -> Optional[Schedule]:
        return self._global

    def _load_snapshot(self) -> None:
        try:
            fields = self.store.list_fields()
        except PersistenceFailure as e:
            if not self._loaded:
                raise
            log.warning("Field refresh failed, keeping previous snapshot: %s", e)
            return
        snapshot = {f.id: f for f in fields}
        for f in fields:
            valve = self._valves.get(f.id)
            if valve is None:
                self._valves[f.id] = ValveController(f.id, f.valve_mode, self.policy, f.name)
            else:
                valve.sync(f.valve_mode, f.name)
        for gone in set(self._valves) - set(snapshot):
            self._valves.pop(gone, None)
            self._engaged.pop(gone, None)
            self._moisture_level.pop(gone, None)
        self._fields = snapshot
        if not self._loaded:
            self._restore_engagements()
        self._loaded = True

    def _restore_engagements(self) -> None:
        """Rebuild the engaged map from the watering log after a restart.

        A field counts as engaged when its newest log entry is a Scheduled
        session that started inside the window open right now.  Once the
        window has closed, a field still held in an engage mode the policy
        would revert is picked up too, so the next pass disengages it.
        """
        now = self.clock.now()
        revertible = self.policy.engage_mode is not self.policy.disengage_mode
        for field in self._fields.values():
            governing = self.governing_schedule(field)
            if governing is None:
                continue
            try:
                history = self.recorder.history(field.id)
            except PersistenceFailure as e:
                log.warning("Could not read watering history for field %s: %s", field.id, e)
                continue
            if not history or history[0].method is not WateringMethod.SCHEDULED:
                continue
            latest = history[0]
            if is_active(governing, now):
                window_start, _ = window_bounds(governing, now)
                if latest.start_time < window_start:
                    continue
                if latest.end_time > now:
                    self.recorder.resume_session(latest)
            elif not (revertible and field.valve_mode is self.policy.engage_mode):
                continue
            log.info("Field %s already engaged by schedule %s", field.id, governing.label)
            self._engaged[field.id] = governing

    def _ensure_snapshot(self) -> None:
        if not self._loaded:
            self._load_snapshot()

    def fields(self) -> List[Field]:
        with self._lock:
            self._ensure_snapshot()
            return list(self._fields.values())

    def get_field(self, field_id: str) -> Field:
        with self._lock:
            self._ensure_snapshot()
            try:
                return self._fields[str(field_id)]
            except KeyError:
                raise FieldNotFound(str(field_id)) from None

    def governing_schedule(self, field: Field) -> Optional[Schedule]:
        schedule = field.individual_schedule
        if schedule is not None and schedule.enabled:
            return schedule
        if self._global is not None and self._global.enabled:
            return self._global
        return None

    def is_field_governed_active(self, field: Field) -> bool:
        return is_active(self.governing_schedule(field), self.clock.now())

    def field_status(self, field: Field) -> dict:
        governing = self.governing_schedule(field)
        if governing is None:
            governed_by = None
        elif governing is field.individual_schedule:
            governed_by = "field"
        else:
            governed_by = "global"
        status = field.as_dict()
        status.update({
            "governed_by": governed_by,
            "governing_schedule": governing.as_dict() if governing else None,
            "schedule_active": is_active(governing, self.clock.now()),
            "engaged": field.id in self._engaged,
        })
        return status

    # ---------- public operations ----------

    def evaluate_tick(self) -> List[EngineEvent]:
        """Run one reconciliation pass over all fields and return its events."""
        with self._lock:
            self._load_snapshot()
            now = self.clock.now()
            events: List[EngineEvent] = []
            for field_id in list(self._fields):
                events.extend(self._reconcile(self._fields[field_id], now))
                events.extend(self._check_moisture(self._fields[field_id], now))
            return events

    def refresh(self) -> List[EngineEvent]:
        """Reload telemetry and raise moisture alerts without touching valves."""
        with self._lock:
            self._load_snapshot()
            now = self.clock.now()
            events: List[EngineEvent] = []
            for field in list(self._fields.values()):
                events.extend(self._check_moisture(field, now))
            return events

    def request_manual_valve(self, field_id: str, mode) -> Field:
        mode = ValveMode(str(getattr(mode, "value", mode)).lower())
        with self._lock:
            field = self.get_field(field_id)
            now = self.clock.now()
            governing = self.governing_schedule(field)
            valve = self._valves[field.id]
            try:
                transition = valve.request_manual(
                    mode, is_active(governing, now), governing,
                    is_global=governing is not None and governing is not field.individual_schedule,
                )
            except ScheduleConflict as conflict:
                log.info("Rejected manual %s for field %s: %s", mode.value, field.id, conflict)
                self._publish([EngineEvent(
                    EventKind.MANUAL_CONTROL_REJECTED, field.id, now, str(conflict),
                    mode=mode, previous_mode=valve.mode, severity="warning", schedule=governing,
                )])
                raise
            # A window that closed since the last tick hands the field back
            # to manual control here, not on the next tick.
            engaged = self._engaged.get(field.id)
            previous = valve.mode
            events: List[EngineEvent] = []
            if transition is None:
                if engaged is None:
                    return field
                self.recorder.close_session(field.id, now)
            else:
                entry = self._commit(field, transition, now, close_session=engaged is not None)
                events.append(self._valve_event(self._fields[field.id], transition, now, entry))
            if engaged is not None:
                self._engaged.pop(field.id, None)
                events.insert(0, EngineEvent(
                    EventKind.SCHEDULE_DISENGAGED, field.id, now,
                    f"Scheduled watering {engaged.label} ended for {field.name}. "
                    f"Valve left under manual control.",
                    mode=valve.mode, previous_mode=previous, schedule=engaged,
                ))
            self._publish(events)
            return self._fields[field.id]

    def set_schedule(self, field_id: Optional[str], schedule: Schedule) -> List[EngineEvent]:
        """Install a schedule for one field, or the global one when field_id is None.

        Affected fields are re-evaluated immediately; the events of that
        pass are returned.
        """
        if not isinstance(schedule, Schedule):
            raise InvalidSchedule("A Schedule is required")
        schedule.validate()
        with self._lock:
            self._ensure_snapshot()
            if field_id is None:
                self._global = schedule
                log.info("Global schedule set to %s (enabled=%s)", schedule.label, schedule.enabled)
                return self._reevaluate(list(self._fields.values()))
            field = self.get_field(field_id)
            self.store.update_schedule(field.id, schedule)
            updated = dataclasses.replace(field, individual_schedule=schedule)
            self._fields[field.id] = updated
            return self._reevaluate([updated])

    def cancel_schedule(self, field_id: Optional[str]) -> List[EngineEvent]:
        """Disable a field's schedule (or the global one) and revert engaged valves."""
        with self._lock:
            self._ensure_snapshot()
            if field_id is None:
                if self._global is not None:
                    self._global = self._global.disabled()
                log.info("Global schedule cancelled")
                return self._reevaluate(list(self._fields.values()))
            field = self.get_field(field_id)
            if field.individual_schedule is None or not field.individual_schedule.enabled:
                return self._reevaluate([field])
            cancelled = field.individual_schedule.disabled()
            self.store.update_schedule(field.id, cancelled)
            updated = dataclasses.replace(field, individual_schedule=cancelled)
            self._fields[field.id] = updated
            return self._reevaluate([updated])

    # ---------- internals ----------

    def _reevaluate(self, fields: List[Field]) -> List[EngineEvent]:
        now = self.clock.now()
        events: List[EngineEvent] = []
        for field in fields:
            events.extend(self._reconcile(self._fields[field.id], now))
        return events

    def _reconcile(self, field: Field, now: datetime) -> List[EngineEvent]:
        events: List[EngineEvent] = []
        try:
            governing = self.governing_schedule(field)
            if governing is not None:
                governing.validate()
            active = is_active(governing, now)
            engaged = self._engaged.get(field.id)
            if engaged is not None and (not active or engaged != governing):
                events.extend(self._disengage(field, engaged, now))
                self._engaged.pop(field.id, None)
                field = self._fields[field.id]
            if active and field.id not in self._engaged:
                events.extend(self._engage(field, governing, now))
                self._engaged[field.id] = governing
        except InvalidSchedule as e:
            log.error("Skipping field %s this tick: invalid schedule: %s", field.id, e)
        except PersistenceFailure as e:
            log.error("Skipping field %s this tick: %s", field.id, e)
        # the edge state only moves for steps that completed
        self._publish(events)
        return events

    def _engage(self, field: Field, schedule: Schedule, now: datetime) -> List[EngineEvent]:
        valve = self._valves[field.id]
        transition = valve.apply_schedule(ScheduleDecision.ENGAGE)
        _, window_end = window_bounds(schedule, now)
        entry = self._commit(field, transition, now, session=(WateringMethod.SCHEDULED, window_end))
        field = self._fields[field.id]
        scope = "global schedule" if schedule is not field.individual_schedule else "schedule"
        events = [EngineEvent(
            EventKind.SCHEDULE_ENGAGED, field.id, now,
            f"Automatic irrigation for {field.name} started by {scope} {schedule.label}. "
            f"Valve set to {valve.mode.value.title()} mode.",
            mode=valve.mode, previous_mode=transition.previous if transition else valve.mode,
            severity="success", log_entry=entry, schedule=schedule,
        )]
        if transition is not None:
            events.append(self._valve_event(field, transition, now, entry))
        return events

    def _disengage(self, field: Field, schedule: Schedule, now: datetime) -> List[EngineEvent]:
        valve = self._valves[field.id]
        transition = valve.apply_schedule(ScheduleDecision.DISENGAGE)
        entry = self._commit(field, transition, now, close_session=True)
        field = self._fields[field.id]
        events = [EngineEvent(
            EventKind.SCHEDULE_DISENGAGED, field.id, now,
            f"Scheduled watering {schedule.label} ended for {field.name}. "
            f"Valve is now {valve.mode.value.title()}.",
            mode=valve.mode, previous_mode=transition.previous if transition else valve.mode,
            schedule=schedule,
        )]
        if transition is not None:
            events.append(self._valve_event(field, transition, now, entry))
        return events

    def _commit(self, field: Field, transition: Optional[Transition], now: datetime,
                session: Optional[Tuple[WateringMethod, datetime]] = None,
                close_session: bool = False) -> Optional[WateringLogEntry]:
        """Persist a transition and its log entry, then apply it in memory.

        The valve write goes first and the log is only touched once it
        has succeeded.  If the log write fails the valve write is undone
        and PersistenceFailure propagates, so the store, the log and the
        in-memory state never disagree.
        """
        if transition is not None:
            self.store.update_valve_mode(field.id, transition.mode)
        entry = None
        try:
            if close_session or (transition is not None and transition.mode is ValveMode.OFF):
                self.recorder.close_session(field.id, now)
            if session is not None:
                method, end = session
                entry = self.recorder.start_session(field.id, method, now, end)
            elif transition is not None and transition.opens_session:
                entry = self.recorder.start_session(field.id, transition.method, now)
        except PersistenceFailure:
            if transition is not None:
                self._rollback(field.id, transition.previous)
            raise
        if transition is not None:
            self._valves[field.id].commit(transition)
        changes = {}
        if transition is not None:
            changes["valve_mode"] = transition.mode
        if entry is not None:
            changes["last_watered"] = entry.start_time
        if changes:
            self._fields[field.id] = dataclasses.replace(self._fields[field.id], **changes)
        return entry

    def _rollback(self, field_id: str, mode: ValveMode) -> None:
        try:
            self.store.update_valve_mode(field_id, mode)
        except PersistenceFailure as e:
            log.error("Rollback of valve %s to %s failed: %s", field_id, mode.value, e)

    def _valve_event(self, field: Field, transition: Transition, now: datetime,
                     entry: Optional[WateringLogEntry]) -> EngineEvent:
        if transition.mode is ValveMode.ON:
            message = f"Watering started for {field.name}."
        elif transition.mode is ValveMode.AUTO:
            message = f"{field.name} switched to Auto irrigation mode."
        else:
            message = f"Watering stopped for {field.name}. Valve is now closed."
        if entry is not None:
            message += f" Watering log created ({entry.duration} min, {entry.method.value})."
        return EngineEvent(
            EventKind.VALVE_CHANGED, field.id, now, message,
            mode=transition.mode, previous_mode=transition.previous, log_entry=entry,
        )

    def _check_moisture(self, field: Field, now: datetime) -> List[EngineEvent]:
        level = None
        moisture = field.soil_moisture
        if moisture is not None:
            if moisture < self.critical_moisture:
                level = "critical"
            elif moisture < self.low_moisture and field.valve_mode is ValveMode.AUTO:
                level = "warning"
        previous = self._moisture_level.get(field.id)
        self._moisture_level[field.id] = level
        if level is None or level == previous:
            return []
        if level == "critical":
            message = (f"{field.name} ({field.crop_type}) has critically low soil moisture "
                       f"at {moisture:g}%. Immediate watering recommended.")
        else:
            message = (f"{field.name} soil moisture is at {moisture:g}%. "
                       f"Consider watering your {field.crop_type.lower()} soon.")
        event = EngineEvent(EventKind.LOW_MOISTURE_ALERT, field.id, now, message, severity=level)
        self._publish([event])
        return [event]

    def _publish(self, events: List[EngineEvent]) -> None:
        if self.sink is None:
            return
        for event in events:
            try:
                self.sink.emit(event)
            except Exception as e:
                failure = e if isinstance(e, SinkDeliveryFailure) else SinkDeliveryFailure(str(e))
                log.warning("Notification for %s on field %s not delivered: %s",
                            event.kind.value, event.field_id, failure)


# =========================
# Wiring
# =========================

def load_config() -> dict:
    """Load the JSON config from disk, creating it with defaults if needed."""
    if not os.path.exists(CONFIG_PATH):
        with open(CONFIG_PATH, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        return json.loads(json.dumps(DEFAULT_CONFIG))
    with open(CONFIG_PATH, "r") as f:
        cfg = json.load(f)
    # Merge missing keys, one level into each section
    for k, v in DEFAULT_CONFIG.items():
        if k not in cfg:
            cfg[k] = json.loads(json.dumps(v))
        elif isinstance(v, dict) and isinstance(cfg[k], dict):
            for sub, default in v.items():
                cfg[k].setdefault(sub, default)
    return cfg


def save_config(cfg: dict):
    """Atomically save the configuration to disk."""
    with LOCK:
        tmp = CONFIG_PATH + ".tmp"
        with open(tmp, "w") as f:
            json.dump(cfg, f, indent=2)
        os.replace(tmp, CONFIG_PATH)


def global_schedule_from_config(cfg: dict) -> Optional[Schedule]:
    data = cfg.get("global_schedule")
    if not data:
        return None
    try:
        return Schedule.from_dict(data)
    except InvalidSchedule as e:
        log.warning("Ignoring invalid global schedule in config: %s", e)
        return None


def build_engine(cfg: dict, clock: Optional[Clock] = None,
                 session=None) -> Tuple[SchedulingEngine, NotificationCenter]:
    """Assemble stores, recorder, sinks and engine from the config."""
    policy = SchedulePolicy.from_config(cfg)
    backend = cfg.get("backend", {})
    if backend.get("url"):
        client = BackendClient(backend["url"], float(backend.get("timeout", 10)), session)
        field_store = RestFieldStore(client, cfg)
        log_store = RestWateringLogStore(client)
    else:
        log.info("No backend configured; using the in-memory demo farm")
        fields = demo_fields()
        for f in fields:
            data = cfg.get("schedules", {}).get(f.id)
            if data:
                try:
                    f.individual_schedule = Schedule.from_dict(data)
                except InvalidSchedule as e:
                    log.warning("Ignoring stored schedule for field %s: %s", f.id, e)
        field_store = InMemoryFieldStore(fields)
        log_store = InMemoryWateringLogStore()

    notifications = NotificationCenter()
    sink: NotificationSink = notifications
    webhook = cfg.get("notifications", {}).get("webhook_url")
    if webhook:
        sink = FanOutSink(notifications, WebhookSink(webhook, session=session))

    alerts = cfg.get("alerts", {})
    engine = SchedulingEngine(
        field_store,
        WateringLogRecorder(log_store, policy.default_duration_minutes),
        sink=sink,
        clock=clock,
        global_schedule=global_schedule_from_config(cfg),
        policy=policy,
        critical_moisture=float(alerts.get("critical_moisture", 30)),
        low_moisture=float(alerts.get("low_moisture", 45)),
    )
    return engine, notifications


class IrrigationScheduler:
    """Run the engine periodically on an APScheduler background thread.

    Two interval jobs are installed: `evaluate` (schedule reconciliation,
    every tick_seconds) and `refresh` (telemetry and moisture alerts,
    every refresh_seconds).  Each job runs at most one instance at a time
    and missed runs are coalesced.
    """

    def __init__(self, engine: SchedulingEngine, cfg: dict):
        self.engine = engine
        self.cfg = cfg
        self.sched = BackgroundScheduler(daemon=True)

    def start(self):
        self.reload_jobs()
        self.sched.start()

    def shutdown(self):
        self.sched.shutdown(wait=False)

    def reload_jobs(self):
        for job in list(self.sched.get_jobs()):
            self.sched.remove_job(job.id)
        timers = self.cfg.get("timers", {})
        tick = int(timers.get("tick_seconds", 60))
        refresh = int(timers.get("refresh_seconds", 30))
        self.sched.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=tick),
            id="evaluate",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=tick,
        )
        if refresh > 0:
            self.sched.add_job(
                self._run_refresh,
                trigger=IntervalTrigger(seconds=refresh),
                id="refresh",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=refresh,
            )

    def next_run(self, job_id: str = "evaluate") -> Optional[datetime]:
        for job in self.sched.get_jobs():
            if job.id == job_id:
                return getattr(job, "next_run_time", None)
        return None

    def _run_tick(self):
        try:
            events = self.engine.evaluate_tick()
        except Exception:
            log.exception("Scheduled evaluation failed")
            return
        if events:
            log.info("Evaluation raised %d event(s)", len(events))

    def _run_refresh(self):
        try:
            self.engine.refresh()
        except Exception:
            log.exception("Telemetry refresh failed")


# =========================
# Web (Flask)
# =========================

def build_app(cfg: dict, engine: SchedulingEngine, scheduler: IrrigationScheduler | None = None,
              notifications: NotificationCenter | None = None) -> Flask:
    """Construct the Flask JSON API used by the dashboard."""
    app = Flask(__name__)

    @app.errorhandler(InvalidSchedule)
    def _invalid_schedule(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(FieldNotFound)
    def _field_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(ScheduleConflict)
    def _schedule_conflict(e):
        return jsonify({"error": str(e), "field_id": e.field_id}), 409

    @app.errorhandler(PersistenceFailure)
    def _persistence_failure(e):
        return jsonify({"error": str(e)}), 502

    def _events(events: List[EngineEvent]) -> list:
        return [e.as_dict() for e in events]

    def _schedule_payload() -> Schedule:
        data = request.get_json(force=True, silent=True) or {}
        return Schedule.from_dict({"start": data.get("start"), "end": data.get("end"), "enabled": True})

    @app.get("/api/status")
    def api_status():
        now_dt = engine.clock.now()
        fields = engine.fields()
        gs = engine.global_schedule
        statuses = [engine.field_status(f) for f in fields]
        next_run = scheduler.next_run() if scheduler else None
        return jsonify({
            "fields": statuses,
            "global_schedule": gs.as_dict() if gs else None,
            "global_schedule_active": is_active(gs, now_dt),
            "fields_on_global_schedule": sum(1 for s in statuses if s["governed_by"] == "global"),
            "fields_with_individual_schedules": sum(1 for s in statuses if s["governed_by"] == "field"),
            "fields_watering": sum(1 for f in fields if f.valve_mode is not ValveMode.OFF),
            "server_time": now_dt.strftime("%Y-%m-%d %H:%M:%S"),
            "server_time_iso": now_dt.isoformat(),
            "next_evaluation": next_run.isoformat() if next_run else None,
            "unread_notifications": notifications.unread_count() if notifications else 0,
            "mode": "rest" if cfg.get("backend", {}).get("url") else "demo",
        })

    @app.get("/api/fields")
    def api_fields():
        return jsonify([engine.field_status(f) for f in engine.fields()])

    @app.get("/api/fields/<field_id>")
    def api_field(field_id: str):
        return jsonify(engine.field_status(engine.get_field(field_id)))

    @app.post("/api/fields/<field_id>/valve")
    def api_field_valve(field_id: str):
        data = request.get_json(force=True, silent=True) or {}
        mode = str(data.get("mode", "")).strip().lower()
        if mode not in {m.value for m in ValveMode}:
            return jsonify({"error": "mode must be one of on, off, auto"}), 400
        field = engine.request_manual_valve(field_id, mode)
        return jsonify(engine.field_status(field))

    @app.post("/api/fields/<field_id>/schedule")
    def api_field_schedule_set(field_id: str):
        schedule = _schedule_payload()
        events = engine.set_schedule(field_id, schedule)
        return jsonify({"schedule": schedule.as_dict(), "events": _events(events)})

    @app.route("/api/fields/<field_id>/schedule", methods=["DELETE"])
    def api_field_schedule_cancel(field_id: str):
        events = engine.cancel_schedule(field_id)
        return jsonify({"events": _events(events)})

    @app.post("/api/schedule")
    def api_global_schedule_set():
        schedule = _schedule_payload()
        events = engine.set_schedule(None, schedule)
        with LOCK:
            cfg["global_schedule"] = schedule.as_dict()
            save_config(cfg)
        return jsonify({"global_schedule": schedule.as_dict(), "events": _events(events)})

    @app.route("/api/schedule", methods=["DELETE"])
    def api_global_schedule_cancel():
        events = engine.cancel_schedule(None)
        gs = engine.global_schedule
        with LOCK:
            if gs is not None:
                cfg["global_schedule"] = gs.as_dict()
            else:
                cfg.setdefault("global_schedule", {})["enabled"] = False
            save_config(cfg)
        return jsonify({"global_schedule": gs.as_dict() if gs else None, "events": _events(events)})

    @app.post("/api/tick")
    def api_tick():
        return jsonify({"events": _events(engine.evaluate_tick())})

    @app.get("/api/fields/<field_id>/watering-logs")
    def api_field_logs(field_id: str):
        field = engine.get_field(field_id)
        return jsonify([e.as_dict() for e in engine.recorder.history(field.id)])

    @app.get("/api/notifications")
    def api_notifications():
        if notifications is None:
            return jsonify({"notifications": [], "unread": 0})
        return jsonify({
            "notifications": notifications.notifications(),
            "unread": notifications.unread_count(),
        })

    @app.post("/api/notifications/read")
    def api_notifications_read():
        if notifications is None:
            return ("Notifications unavailable", 400)
        data = request.get_json(force=True, silent=True) or {}
        if data.get("id"):
            if not notifications.mark_read(str(data["id"])):
                return ("Notification not found", 404)
        else:
            notifications.mark_all_read()
        return jsonify({"unread": notifications.unread_count()})

    @app.route("/api/notifications/<notification_id>", methods=["DELETE"])
    def api_notification_delete(notification_id: str):
        if notifications is None or not notifications.delete(notification_id):
            return ("Notification not found", 404)
        return jsonify({"deleted": 1})

    return app


# =========================
# CLI
# =========================

def print_info():
    """Print a friendly command reference to stdout."""
    print(r"""
Irrigation scheduling engine - usage manual
===========================================

Run the API and the periodic scheduler:
    python3 irrigator.py web [--host 0.0.0.0] [--port 8000]

One-off commands:
    python3 irrigator.py status
    python3 irrigator.py tick                      # run one reconciliation pass
    python3 irrigator.py valve <field> on|off|auto # manual valve control
    python3 irrigator.py schedule set --start 21:00 --end 23:00 [--field ID]
    python3 irrigator.py schedule cancel [--field ID]
    python3 irrigator.py logs <field>

Schedules:
  • Times are HH:MM (24h).  End before start means the window runs
    past midnight (22:00 -> 02:00).  Start and end cannot be equal.
  • Without --field the global schedule is changed.  It applies to every
    field that has no enabled schedule of its own.
  • While a field's governing schedule is active, manual valve commands
    for that field are refused.

Configuration lives in config.json next to this script (override with
IRRIGATOR_CONFIG).  Set backend.url, or IRRIGATOR_BACKEND_URL, to talk to
the dashboard backend; otherwise a demo farm is kept in memory.
IRRIGATOR_HOST overrides the web host.
""")


def main(argv: Optional[List[str]] = None):
    logging.basicConfig(
        level=os.environ.get("IRRIGATOR_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config()
    backend_url = os.environ.get("IRRIGATOR_BACKEND_URL")
    if backend_url:
        cfg.setdefault("backend", {})["url"] = backend_url
    engine, notifications = build_engine(cfg)

    parser = argparse.ArgumentParser(description="Farm irrigation scheduling engine")
    sub = parser.add_subparsers(dest="cmd")
    parser.add_argument("-info", action="store_true", help="Show usage manual")

    p_web = sub.add_parser("web", help="Run JSON API and scheduler")
    default_host = os.environ.get("IRRIGATOR_HOST", cfg.get("web", {}).get("host", "0.0.0.0"))
    p_web.add_argument("--host", default=default_host)
    p_web.add_argument("--port", type=int, default=int(cfg.get("web", {}).get("port", 8000)))

    sub.add_parser("status", help="Show fields, valves and schedules")
    sub.add_parser("tick", help="Run one reconciliation pass")

    p_valve = sub.add_parser("valve", help="Set a field's valve manually")
    p_valve.add_argument("field")
    p_valve.add_argument("mode", choices=[m.value for m in ValveMode])

    p_sch = sub.add_parser("schedule", help="Manage schedules")
    sch_sub = p_sch.add_subparsers(dest="sch_cmd")
    p_set = sch_sub.add_parser("set", help="Set a schedule")
    p_set.add_argument("--start", required=True, help="HH:MM 24h")
    p_set.add_argument("--end", required=True, help="HH:MM 24h")
    p_set.add_argument("--field", default=None, help="Field id (omit for the global schedule)")
    p_cancel = sch_sub.add_parser("cancel", help="Cancel a schedule")
    p_cancel.add_argument("--field", default=None, help="Field id (omit for the global schedule)")

    p_logs = sub.add_parser("logs", help="Show a field's watering history")
    p_logs.add_argument("field")

    args = parser.parse_args(argv)

    if args.info or args.cmd is None:
        print_info()
        return

    if args.cmd == "web":
        scheduler = IrrigationScheduler(engine, cfg)
        scheduler.start()
        app = build_app(cfg, engine, scheduler, notifications)
        app.run(host=args.host, port=args.port)
        return

    try:
        if args.cmd == "status":
            gs = engine.global_schedule
            if gs is None:
                print("Global schedule: (none)")
            else:
                print(f"Global schedule: {gs.label} {'EN' if gs.enabled else 'DIS'}")
            print("Fields:")
            for f in engine.fields():
                st = engine.field_status(f)
                sched = st["governing_schedule"]
                window = f"{sched['start']}->{sched['end']} ({st['governed_by']})" if sched else "manual"
                active = " ACTIVE" if st["schedule_active"] else ""
                print(f"  {f.id:>4}  {f.name:<16}  valve={f.valve_mode.value:<4}  {window}{active}")
            return

        if args.cmd == "tick":
            events = engine.evaluate_tick()
            if not events:
                print("No changes")
            for e in events:
                print(f"[{e.kind.value}] {e.message}")
            return

        if args.cmd == "valve":
            field = engine.request_manual_valve(args.field, args.mode)
            print(f"{field.name}: valve={field.valve_mode.value}")
            return

        if args.cmd == "schedule":
            if args.sch_cmd == "set":
                schedule = Schedule.parse(args.start, args.end)
                events = engine.set_schedule(args.field, schedule)
                if args.field is None:
                    with LOCK:
                        cfg["global_schedule"] = schedule.as_dict()
                        save_config(cfg)
                print(f"Schedule {schedule.label} set for {args.field or 'all fields'}")
            elif args.sch_cmd == "cancel":
                events = engine.cancel_schedule(args.field)
                if args.field is None:
                    with LOCK:
                        cfg.setdefault("global_schedule", {})["enabled"] = False
                        save_config(cfg)
                print(f"Schedule cancelled for {args.field or 'all fields'}")
            else:
                print_info()
                return
            for e in events:
                print(f"[{e.kind.value}] {e.message}")
            return

        if args.cmd == "logs":
            entries = engine.recorder.history(engine.get_field(args.field).id)
            if not entries:
                print("(no watering logs)")
            for e in entries:
                print(f"  {e.start_time:%Y-%m-%d %H:%M} -> {e.end_time:%H:%M}  "
                      f"{e.duration:>4} min  {e.method.value}")
            return
    except IrrigationError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print_info()


if __name__ == "__main__":
    main()
