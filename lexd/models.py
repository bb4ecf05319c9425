"""Configuration and event data structures."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import yaml

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DIGITS = "0123456789"
_NUMBER = re.compile(r"([0-9]*)(\.([0-9]*))?")
_UNIT = re.compile(r"[^0-9.]*")
_TIMESTAMP = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?"
    r"(?:([Zz])|([+-])(\d{2}):(\d{2}))$"
)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_LISTENER_TEXT_FIELDS = ("id", "path", "auth_token", "description")


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _duration_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeError(f"cannot parse a duration from {type(value).__name__}")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as "300ms", "1.5h" or "1h30m15s".

    Scalars that are not strings are read by their text, so the integer 10
    is parsed as "10" and rejected for its missing unit.
    """
    original = _duration_text(value)
    rest = original
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"time: invalid duration {_quote(original)}")

    limit = (1 << 63) if negative else (1 << 63) - 1
    total = 0
    while rest:
        if rest[0] != "." and rest[0] not in _DIGITS:
            raise ValueError(f"time: invalid duration {_quote(original)}")
        number = _NUMBER.match(rest)
        whole, fraction = number.group(1), number.group(3)
        if not whole and not fraction:
            raise ValueError(f"time: invalid duration {_quote(original)}")
        rest = rest[number.end():]

        unit = _UNIT.match(rest).group(0)
        if not unit:
            raise ValueError(f"time: missing unit in duration {_quote(original)}")
        rest = rest[len(unit):]
        scale = _UNIT_NANOSECONDS.get(unit)
        if scale is None:
            raise ValueError(
                f"time: unknown unit {_quote(unit)} in duration {_quote(original)}"
            )

        amount = int(whole or "0") * scale
        if fraction:
            amount += int(fraction) * scale // 10 ** len(fraction)
        total += amount
        if total > limit:
            raise ValueError(f"time: invalid duration {_quote(original)}")

    microseconds = total // 1000
    return timedelta(microseconds=-microseconds if negative else microseconds)


def _mapping(value: Any, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping")
    return value


def _sequence(data: Mapping, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {key!r} must be a list")
    return value


def _string(data: Mapping, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, (Mapping, list)):
        raise ValueError(f"field {key!r} must be a scalar")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _optional_int(data: Mapping, key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def _optional_float(data: Mapping, key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field {key!r} must be a number")
    return float(value)


def _bool(data: Mapping, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"field {key!r} must be a boolean")
    return value


def _optional_policy(data: Mapping, key: str) -> RetryPolicy | None:
    value = data.get(key)
    return None if value is None else RetryPolicy.from_dict(value)


def _interval(data: Mapping, key: str) -> timedelta:
    value = data.get(key)
    return timedelta(0) if value is None else parse_duration(value)


@dataclass
class RetryPolicy:
    """Retry parameters; None marks a value that was not set."""

    max_retries: int | None = None
    delay: float | None = None
    backoff_factor: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None) -> RetryPolicy:
        values = _mapping(data, "retry policy")
        return cls(
            max_retries=_optional_int(values, "max_retries"),
            delay=_optional_float(values, "delay"),
            backoff_factor=_optional_float(values, "backoff_factor"),
        )


@dataclass
class ApplicationSettings:
    """Global application settings."""

    log_level: str = ""
    log_format: str = ""
    default_retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_concurrency: int = 0
    queue_persist_path: str = ""
    pid_file_path: str = ""

    @classmethod
    def from_dict(cls, data: Mapping | None) -> ApplicationSettings:
        values = _mapping(data, "application settings")
        return cls(
            log_level=_string(values, "log_level"),
            log_format=_string(values, "log_format"),
            default_retry=RetryPolicy.from_dict(values.get("default_retry")),
            max_concurrency=_optional_int(values, "max_concurrency") or 0,
            queue_persist_path=_string(values, "queue_persist_path"),
            pid_file_path=_string(values, "pid_file_path"),
        )


@dataclass
class ListenerConfig:
    """A webhook listener."""

    id: str = ""
    path: str = ""
    action_id: str = ""
    auth_token: str = ""
    rate_limit: float | None = None
    burst: int | None = None
    retry_policy: RetryPolicy | None = None
    description: str = ""


@dataclass
class WatcherConfig:
    """A script run periodically that triggers an action when it succeeds."""

    id: str = ""
    script: str = ""
    action_id: str = ""
    interval: timedelta = timedelta(0)
    retry_policy: RetryPolicy | None = None
    description: str = ""


@dataclass
class TimerConfig:
    """An action triggered at a fixed interval."""

    id: str = ""
    action_id: str = ""
    interval: timedelta = timedelta(0)
    retry_policy: RetryPolicy | None = None
    description: str = ""


@dataclass
class ActionParameter:
    """A named parameter of an action."""

    name: str = ""
    type: str = ""
    description: str = ""
    default: Any = None
    required: bool = False


@dataclass
class ActionConfig:
    """An executable action."""

    id: str = ""
    description: str = ""
    script: str = ""
    parameters: list[ActionParameter] = field(default_factory=list)
    retry_policy: RetryPolicy | None = None


def _listener(data: Any) -> ListenerConfig:
    values = _mapping(data, "listener")
    text_fields = {name: _string(values, name) for name in _LISTENER_TEXT_FIELDS}
    return ListenerConfig(
        **text_fields,
        action_id=_string(values, "action"),
        rate_limit=_optional_float(values, "rate_limit"),
        burst=_optional_int(values, "burst"),
        retry_policy=_optional_policy(values, "retry_policy"),
    )


def _watcher(data: Any) -> WatcherConfig:
    values = _mapping(data, "watcher")
    return WatcherConfig(
        id=_string(values, "id"),
        script=_string(values, "script"),
        action_id=_string(values, "action"),
        interval=_interval(values, "interval"),
        retry_policy=_optional_policy(values, "retry_policy"),
        description=_string(values, "description"),
    )


def _timer(data: Any) -> TimerConfig:
    values = _mapping(data, "timer")
    return TimerConfig(
        id=_string(values, "id"),
        action_id=_string(values, "action"),
        interval=_interval(values, "interval"),
        retry_policy=_optional_policy(values, "retry_policy"),
        description=_string(values, "description"),
    )


def _parameter(data: Any) -> ActionParameter:
    values = _mapping(data, "action parameter")
    return ActionParameter(
        name=_string(values, "name"),
        type=_string(values, "type"),
        description=_string(values, "description"),
        default=values.get("default"),
        required=_bool(values, "required"),
    )


def _action(data: Any) -> ActionConfig:
    values = _mapping(data, "action")
    return ActionConfig(
        id=_string(values, "id"),
        description=_string(values, "description"),
        script=_string(values, "script"),
        parameters=[_parameter(item) for item in _sequence(values, "parameters")],
        retry_policy=_optional_policy(values, "retry_policy"),
    )


@dataclass
class Config:
    """The root configuration."""

    application: ApplicationSettings = field(default_factory=ApplicationSettings)
    listeners: list[ListenerConfig] = field(default_factory=list)
    watchers: list[WatcherConfig] = field(default_factory=list)
    timers: list[TimerConfig] = field(default_factory=list)
    actions: list[ActionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping | None) -> Config:
        values = _mapping(data, "configuration")
        return cls(
            application=ApplicationSettings.from_dict(values.get("application")),
            listeners=[_listener(item) for item in _sequence(values, "listeners")],
            watchers=[_watcher(item) for item in _sequence(values, "watchers")],
            timers=[_timer(item) for item in _sequence(values, "timers")],
            actions=[_action(item) for item in _sequence(values, "actions")],
        )

    @classmethod
    def from_yaml(cls, text: str) -> Config:
        return cls.from_dict(yaml.safe_load(text))


class EventType(str, Enum):
    """Where an event came from."""

    LISTENER = "listener"
    WATCHER = "watcher"
    TIMER = "timer"
    MANUAL = "manual"


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _parse_timestamp(text: str) -> datetime:
    match = _TIMESTAMP.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    year, month, day, hour, minute, second = (int(match.group(i)) for i in range(1, 7))
    fraction = match.group(7) or ""
    microsecond = int(fraction[:6].ljust(6, "0")) if fraction else 0
    if match.group(8):
        zone = timezone.utc
    else:
        delta = timedelta(hours=int(match.group(10)), minutes=int(match.group(11)))
        zone = timezone(delta if match.group(9) == "+" else -delta)
    return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=zone)


@dataclass
class Event:
    """A unit of work waiting to be processed."""

    id: str = ""
    source_id: str = ""
    type: EventType | str = ""
    action_id: str = ""
    timestamp: datetime = _ZERO_TIME
    parameters: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        kind = self.type.value if isinstance(self.type, EventType) else self.type
        return {
            "id": self.id,
            "source_id": self.source_id,
            "type": kind,
            "action_id": self.action_id,
            "timestamp": _format_timestamp(self.timestamp),
            "parameters": None if self.parameters is None else dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> Event:
        values = _mapping(data, "event")
        raw_type = _string(values, "type")
        try:
            kind: EventType | str = EventType(raw_type)
        except ValueError:
            kind = raw_type
        stamp = values.get("timestamp")
        parameters = values.get("parameters")
        if parameters is not None:
            if not isinstance(parameters, Mapping):
                raise ValueError("field 'parameters' must be a mapping")
            parameters = {str(key): str(value) for key, value in parameters.items()}
        return cls(
            id=_string(values, "id"),
            source_id=_string(values, "source_id"),
            type=kind,
            action_id=_string(values, "action_id"),
            timestamp=_ZERO_TIME if stamp is None else _parse_timestamp(str(stamp)),
            parameters=parameters,
        )