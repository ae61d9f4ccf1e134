"""
Cron Schedule
=============
Jenkins-flavoured five-field cron expressions for SCM polling triggers.

    MINUTE HOUR DOM MONTH DOW

Supported per field:
    *            every value
    H            one stable value derived from the seed (the job name)
    H(a-b)       stable value inside a-b
    a, a-b       single value / inclusive range
    x/step       stepping over *, H, H(a-b) or a-b
    a,b,c        lists of any of the above

Aliases: @yearly @annually @monthly @weekly @daily @midnight @hourly.

``H`` spreads load: two jobs polling ``H/5 * * * *`` land on different
minutes, but a given job always lands on the same ones.

All fields must match (day-of-month AND day-of-week), as in Jenkins.
"""
import re
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, List, Optional, Tuple

_FIELDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
]

_ALIASES = {
    "@yearly": "H H H H *",
    "@annually": "H H H H *",
    "@monthly": "H H H * *",
    "@weekly": "H H * * H",
    "@daily": "H H * * *",
    "@midnight": "H H(0-2) * * *",
    "@hourly": "H * * * *",
}

_HASH_RANGE = re.compile(r"^H\((\d+)-(\d+)\)$")


class CronError(ValueError):
    """Malformed cron expression."""


def _stable_hash(seed: str, index: int) -> int:
    digest = hashlib.sha256(f"{seed}:{index}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def _parse_part(part: str, lo: int, hi: int, seed: str, index: int, name: str) -> FrozenSet[int]:
    base, _, step_text = part.partition("/")
    step = 1
    if step_text:
        if not step_text.isdigit() or int(step_text) < 1:
            raise CronError(f"Bad step '{step_text}' in {name} field")
        step = int(step_text)

    hashed = False
    if base == "*":
        start, end = lo, hi
    elif base == "H":
        # Keep H inside days every month has, and off the duplicate Sunday (7)
        start, end, hashed = lo, {2: 28, 4: 6}.get(index, hi), True
    elif _HASH_RANGE.match(base):
        m = _HASH_RANGE.match(base)
        start, end, hashed = int(m.group(1)), int(m.group(2)), True
    elif "-" in base:
        a, _, b = base.partition("-")
        if not (a.isdigit() and b.isdigit()):
            raise CronError(f"Bad range '{base}' in {name} field")
        start, end = int(a), int(b)
    elif base.isdigit():
        start = end = int(base)
        if step_text:
            end = hi
    else:
        raise CronError(f"Bad token '{part}' in {name} field")

    if start < lo or end > hi or start > end:
        raise CronError(f"'{part}' out of range {lo}-{hi} in {name} field")

    if hashed:
        h = _stable_hash(seed, index)
        if step_text:
            # H/step: hashed offset within the first step window
            start = start + h % min(step, end - start + 1)
        else:
            value = start + h % (end - start + 1)
            return frozenset({value})

    return frozenset(range(start, end + 1, step))


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]

    @classmethod
    def parse(cls, expression: str, seed: str = "") -> "CronSchedule":
        """
        Parse a cron expression.

        Raises
        ------
        CronError
            Wrong field count or an invalid token.
        """
        text = _ALIASES.get(expression.strip(), expression.strip())
        parts = text.split()
        if len(parts) != 5:
            raise CronError(f"Expected 5 fields, got {len(parts)}: '{expression}'")

        fields = []
        for index, (part, (name, lo, hi)) in enumerate(zip(parts, _FIELDS)):
            values = set()
            for item in part.split(","):
                values |= _parse_part(item, lo, hi, seed, index, name)
            fields.append(frozenset(values))

        dow = frozenset(0 if d == 7 else d for d in fields[4])
        return cls(expression, fields[0], fields[1], fields[2], fields[3], dow)

    def matches(self, when: datetime) -> bool:
        cron_dow = (when.weekday() + 1) % 7  # Monday=0 → Sunday=0
        return (
            when.minute in self.minutes
            and when.hour in self.hours
            and when.day in self.days_of_month
            and when.month in self.months
            and cron_dow in self.days_of_week
        )

    def next_after(self, when: datetime, limit_days: int = 366) -> Optional[datetime]:
        """First matching minute strictly after ``when`` (None if none within the limit)."""
        candidate = when.replace(second=0, microsecond=0) + timedelta(minutes=1)
        end = when + timedelta(days=limit_days)
        while candidate <= end:
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None
