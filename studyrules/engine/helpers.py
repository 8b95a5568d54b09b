# studyrules/engine/helpers.py
from __future__ import annotations

import os
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional

from .types import (
    ActionData,
    Participant,
    Report,
    ResponseItem,
    SurveyItemResponse,
)


def utc_now() -> datetime:
    """Default clock of the engine."""
    return datetime.now(timezone.utc)


# ======================================================================
# 1. RESPONSE LOOKUP
# ======================================================================

def find_survey_item_response(
    responses: Iterable[SurveyItemResponse],
    key: str,
) -> Optional[SurveyItemResponse]:
    for item in responses:
        if item.key == key:
            return item
    return None


def find_response_object(
    survey_item: Optional[SurveyItemResponse],
    path: str,
) -> Optional[ResponseItem]:
    """
    Walks a dot path like "rg.scg.1".
    The first segment must be the key of the item's root response,
    every further segment selects a child by key.
    """
    if survey_item is None or survey_item.response is None:
        return None

    current: Optional[ResponseItem] = None
    for i, segment in enumerate(path.split(".")):
        if i == 0:
            if survey_item.response.key != segment:
                return None
            current = survey_item.response
            continue

        nxt = None
        for child in current.items:  # type: ignore[union-attr]
            if child.key == segment:
                nxt = child
                break
        if nxt is None:
            return None
        current = nxt
    return current


# ======================================================================
# 2. COPY-ON-WRITE
# ======================================================================
# Every helper returns fresh containers; the inputs are never touched.

def update_map_value(original: Optional[Dict[str, str]], key: str, value: str) -> Dict[str, str]:
    out = dict(original or {})
    out[key] = value
    return out


def remove_map_key(original: Optional[Dict[str, str]], key: str) -> Dict[str, str]:
    out = dict(original or {})
    out.pop(key, None)
    return out


def clone_report(report: Report) -> Report:
    return replace(report, data=[replace(d) for d in report.data])


def with_participant(data: ActionData, **changes) -> ActionData:
    """New ActionData whose participant has the given fields replaced."""
    return ActionData(
        participant=replace(data.participant, **changes),
        reports_to_create=dict(data.reports_to_create),
    )


def with_reports(data: ActionData, reports: Dict[str, Report]) -> ActionData:
    return ActionData(participant=data.participant, reports_to_create=reports)


def clone_participant(p: Participant) -> Participant:
    return replace(
        p,
        flags=dict(p.flags),
        linking_codes=dict(p.linking_codes),
        assigned_surveys=[replace(s) for s in p.assigned_surveys],
        last_submissions=dict(p.last_submissions),
        messages=[replace(m) for m in p.messages],
    )


# ======================================================================
# 3. IDS
# ======================================================================

def new_object_id(now: Optional[datetime] = None) -> str:
    """24 hex chars: 4 bytes of unix time + 8 random bytes."""
    ts = int((now or utc_now()).timestamp()) & 0xFFFFFFFF
    return f"{ts:08x}" + os.urandom(8).hex()


def new_session_id(now: Optional[datetime] = None) -> str:
    ts = int((now or utc_now()).timestamp())
    return format(ts, "x") + secrets.token_hex(4)


# ======================================================================
# 4. CALENDAR
# ======================================================================

MONTH_NAMES: Dict[str, int] = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}


def parse_month(name: str) -> Optional[int]:
    return MONTH_NAMES.get(name.strip().lower())


def next_start_of_month(ref: datetime, month: int) -> datetime:
    """
    First day (00:00) of the next occurrence of `month`, seen from `ref`.
    The current month only counts when `ref` is exactly its first instant.
    """
    year = ref.year
    if ref.month > month:
        year += 1
    first = ref.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)
    if ref.month == month and ref > first:
        first = first.replace(year=year + 1)
    return first


def next_iso_week_start(ref: datetime, week: int) -> datetime:
    """Monday 00:00 of the first week (from `ref` on) with ISO number `week`."""
    day = ref
    # 53 is not reached in every year; a bit more than 5 years covers any case
    for _ in range(7 * 53 * 6):
        if day.isocalendar()[1] == week:
            break
        day = day + timedelta(days=1)
    else:
        raise ValueError(f"ISO week {week} not found")
    monday = day - timedelta(days=day.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def from_unix(ts: float, tz: tzinfo) -> datetime:
    return datetime.fromtimestamp(int(ts), tz)


# ======================================================================
# 5. date-fns STYLE FORMATTER
# ======================================================================

# longest first, so "yyyy" wins over "yy" and "MM" over "M"
_DATE_TOKENS: List[str] = [
    "yyyy", "yy",
    "SSS", "SS", "S",
    "MM", "M",
    "dd", "d",
    "HH", "H",
    "hh", "h",
    "mm", "m",
    "ss", "s",
    "aa", "a",
]


def _render_token(token: str, dt: datetime) -> str:
    hour12 = dt.hour % 12 or 12
    if token == "yyyy":
        return f"{dt.year:04d}"
    if token == "yy":
        return f"{dt.year % 100:02d}"
    if token == "SSS":
        return f"{dt.microsecond // 1000:03d}"
    if token == "SS":
        return f"{dt.microsecond // 10000:02d}"
    if token == "S":
        return str(dt.microsecond // 100000)
    if token == "MM":
        return f"{dt.month:02d}"
    if token == "M":
        return str(dt.month)
    if token == "dd":
        return f"{dt.day:02d}"
    if token == "d":
        return str(dt.day)
    if token == "HH":
        return f"{dt.hour:02d}"
    if token == "H":
        return str(dt.hour)
    if token == "hh":
        return f"{hour12:02d}"
    if token == "h":
        return str(hour12)
    if token == "mm":
        return f"{dt.minute:02d}"
    if token == "m":
        return str(dt.minute)
    if token == "ss":
        return f"{dt.second:02d}"
    if token == "s":
        return str(dt.second)
    # a / aa
    return "AM" if dt.hour < 12 else "PM"


def format_date_fns(dt: datetime, fmt: str) -> str:
    """
    Formats `dt` with date-fns style tokens, e.g.
      "yyyy-MM-dd HH:mm:ss" -> "2023-12-25 14:30:45"
      "MM/dd/yy hh:mm a"    -> "12/25/23 02:30 PM"
    Characters that are not part of a token are copied as they are.
    """
    out: List[str] = []
    i = 0
    while i < len(fmt):
        for token in _DATE_TOKENS:
            if fmt.startswith(token, i):
                out.append(_render_token(token, dt))
                i += len(token)
                break
        else:
            out.append(fmt[i])
            i += 1
    return "".join(out)
