"""Locally computed results used when no provider output is available."""

from __future__ import annotations

from collections import Counter
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from .journal import ExpenseRecord, JournalEntry, date_range, unique_locations

EMPTY_SUMMARY = "No journal entries to summarize yet. Write your first entry to get a trip summary."
EMPTY_EXPENSES = "No expenses recorded yet."
STARTER_QUESTIONS = [
    "Where are you right now, and what brought you here?",
    "What are you most looking forward to on this trip?",
    "What would make today feel worth remembering?",
]


def _plural(count: int, word: str, plural: str | None = None) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {plural or word + 's'}"


def _join(items: Sequence[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + f" and {items[-1]}"


def summary_fallback(entries: Sequence[JournalEntry]) -> str:
    parts = [f"You wrote {_plural(len(entries), 'journal entry', 'journal entries')}"]
    bounds = date_range(e.date for e in entries)
    if bounds:
        start, end = bounds
        parts.append(f"on {start}" if start == end else f"between {start} and {end}")
    locations = unique_locations(entries)
    if locations:
        parts.append(f"in {_join(locations)}")
    words = sum(len(e.text.split()) for e in entries)
    return " ".join(parts) + f", {_plural(words, 'word')} in total."


def questions_fallback(entries: Sequence[JournalEntry], count: int) -> List[str]:
    questions: List[str] = []
    for location in unique_locations(entries):
        questions.append(f"What moment from your time in {location} stands out most, and why?")
        questions.append(f"How did {location} differ from what you expected before you arrived?")
    questions.extend(
        [
            "What did you learn about yourself on this part of the journey?",
            "Who did you meet, and what do you want to remember about them?",
            "What would you do differently if you could relive these days?",
        ]
    )
    return questions[:count]


def metadata_fallback(entries: Sequence[JournalEntry]) -> Dict[str, Any]:
    bounds = date_range(e.date for e in entries)
    return {
        "locations": unique_locations(entries),
        "people": [],
        "themes": [],
        "mood": None,
        "entry_count": len(entries),
        "word_count": sum(len(e.text.split()) for e in entries),
        "start_date": bounds[0] if bounds else None,
        "end_date": bounds[1] if bounds else None,
    }


def places_fallback(entries: Sequence[JournalEntry], count: int) -> List[Dict[str, str]]:
    visits = Counter(e.location for e in entries if e.location)
    places = []
    for location, n in sorted(visits.items(), key=lambda item: (-item[1], item[0])):
        places.append(
            {
                "name": location,
                "reason": f"You journaled about it {_plural(n, 'time')}; it may be worth a return visit.",
            }
        )
    return places[:count]


def currency_totals(expenses: Sequence[ExpenseRecord]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for expense in expenses:
        totals[expense.currency] = totals.get(expense.currency, Decimal("0")) + expense.amount
    return dict(sorted(totals.items()))


def category_totals(expenses: Sequence[ExpenseRecord]) -> Dict[str, Dict[str, Decimal]]:
    """Per-category totals, kept per currency because amounts are never converted."""
    totals: Dict[str, Dict[str, Decimal]] = {}
    for expense in expenses:
        bucket = totals.setdefault(expense.category, {})
        bucket[expense.currency] = bucket.get(expense.currency, Decimal("0")) + expense.amount
    return {category: dict(sorted(bucket.items())) for category, bucket in sorted(totals.items())}


def top_categories(expenses: Sequence[ExpenseRecord], limit: int = 3) -> List[str]:
    counts = Counter(e.category for e in expenses)
    return [category for category, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0]))][:limit]


def format_totals(totals: Dict[str, Decimal]) -> str:
    return ", ".join(f"{amount} {currency}" for currency, amount in totals.items()) or "none"


def expenses_fallback(expenses: Sequence[ExpenseRecord]) -> Dict[str, Any]:
    totals = currency_totals(expenses)
    top = top_categories(expenses)
    summary = f"You recorded {_plural(len(expenses), 'expense')} totalling {format_totals(totals)}."
    insights = []
    if top:
        insights.append(f"Most frequent categories: {', '.join(top)}.")
    bounds = date_range(e.date for e in expenses)
    if bounds and bounds[0] != bounds[1]:
        insights.append(f"Spending spans {bounds[0]} to {bounds[1]}.")
    return {"summary": summary, "insights": insights, "top_categories": top}
