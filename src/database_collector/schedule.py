"""Schedule parsing - fixed intervals (``@every 5m``) or cron expressions."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from croniter import croniter

from .errors import ConfigError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse a duration like ``5m``, ``90s`` or ``1h30m`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise ConfigError("Empty duration")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return float(text)

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"Invalid duration: {value!r}")
    return total


@dataclass
class Schedule:
    """When to run the next cycle."""

    expression: str
    interval: Optional[float] = None  # seconds, for "@every" schedules

    @classmethod
    def parse(cls, expression: str) -> "Schedule":
        """
        Parse a schedule expression.

        Accepts ``@every <duration>``, a bare number of seconds, or any cron
        expression croniter understands (including ``@hourly`` and friends).

        Raises:
            ConfigError: If the expression is invalid
        """
        expression = (expression or "").strip()
        if not expression:
            raise ConfigError("Empty schedule expression")

        if expression.startswith("@every"):
            interval = parse_duration(expression[len("@every"):])
        elif re.fullmatch(r"\d+(\.\d+)?", expression):
            interval = float(expression)
        else:
            if not croniter.is_valid(expression):
                raise ConfigError(f"Invalid cron expression: {expression!r}")
            return cls(expression=expression)

        if interval <= 0:
            raise ConfigError(f"Schedule interval must be positive: {expression!r}")
        return cls(expression=expression, interval=interval)

    def next_run(self, base_time: Optional[datetime] = None) -> datetime:
        """Next run time after ``base_time`` (default: now, UTC)."""
        if base_time is None:
            base_time = datetime.now(timezone.utc)
        if self.interval is not None:
            return datetime.fromtimestamp(base_time.timestamp() + self.interval, tz=base_time.tzinfo)
        return croniter(self.expression, base_time).get_next(datetime)

    def next_delay(self, base_time: Optional[datetime] = None) -> float:
        """Seconds until the next run."""
        if base_time is None:
            base_time = datetime.now(timezone.utc)
        return max(0.0, (self.next_run(base_time) - base_time).total_seconds())
