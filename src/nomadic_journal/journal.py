"""Plain journal data handed over by the application's core services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping


def _iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value or "").strip()
    if not text:
        return ""
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError as exc:
        raise ValueError(f"Invalid date: {text!r}") from exc


@dataclass(frozen=True)
class JournalEntry:
    text: str
    date: str = ""
    location: str = ""
    title: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "JournalEntry":
        text = str(data.get("text") or data.get("content") or "").strip()
        if not text:
            raise ValueError("Journal entry text is required")
        return cls(
            text=text,
            date=_iso_date(data.get("date")),
            location=str(data.get("location") or "").strip(),
            title=str(data.get("title") or "").strip(),
        )


@dataclass(frozen=True)
class ExpenseRecord:
    amount: Decimal
    currency: str
    category: str = "other"
    date: str = ""
    description: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ExpenseRecord":
        try:
            amount = Decimal(str(data.get("amount")))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid expense amount: {data.get('amount')!r}") from exc
        currency = str(data.get("currency") or "").strip().upper()
        if not currency:
            raise ValueError("Expense currency is required")
        return cls(
            amount=amount,
            currency=currency,
            category=str(data.get("category") or "other").strip().lower(),
            date=_iso_date(data.get("date")),
            description=str(data.get("description") or "").strip(),
        )


def coerce_entries(items: Iterable[Any]) -> List[JournalEntry]:
    return [item if isinstance(item, JournalEntry) else JournalEntry.from_mapping(item) for item in items]


def coerce_expenses(items: Iterable[Any]) -> List[ExpenseRecord]:
    return [item if isinstance(item, ExpenseRecord) else ExpenseRecord.from_mapping(item) for item in items]


def unique_locations(entries: Iterable[JournalEntry]) -> List[str]:
    seen: List[str] = []
    for entry in entries:
        if entry.location and entry.location not in seen:
            seen.append(entry.location)
    return seen


def date_range(dates: Iterable[str]) -> tuple[str, str] | None:
    known = sorted(d for d in dates if d)
    if not known:
        return None
    return known[0], known[-1]


def describe_date_range(dates: Iterable[str]) -> str:
    bounds = date_range(dates)
    if bounds is None:
        return "undated"
    start, end = bounds
    return start if start == end else f"{start} to {end}"
