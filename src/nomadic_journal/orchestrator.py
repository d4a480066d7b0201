"""Analysis use cases: template -> provider chain -> typed, validated result."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .config import LLMSettings
from .fallbacks import (
    EMPTY_EXPENSES,
    EMPTY_SUMMARY,
    STARTER_QUESTIONS,
    category_totals,
    currency_totals,
    expenses_fallback,
    format_totals,
    metadata_fallback,
    places_fallback,
    questions_fallback,
    summary_fallback,
)
from .journal import (
    ExpenseRecord,
    JournalEntry,
    coerce_entries,
    coerce_expenses,
    describe_date_range,
    unique_locations,
)
from .llm.deadline import Deadline
from .llm.resilience import Outcome
from .llm.types import CompletionRequest, ProviderError
from .prompts import PromptTemplate, TemplateRegistry, estimate_length
from .truncation import order_by_date, select_within_budget, shrink_text
from .validators import (
    MalformedResponse,
    parse_expense_analysis,
    parse_metadata,
    parse_places,
    parse_questions,
)

logger = logging.getLogger(__name__)

OPERATIONS = (
    "summarize_entries",
    "generate_reflective_prompts",
    "extract_metadata",
    "recommend_places",
    "analyze_expenses",
)


class ResultStatus(str, Enum):
    NATIVE = "native"
    DEGRADED = "degraded"
    EMPTY = "empty"


@dataclass
class AnalysisResult:
    kind: str
    value: Any
    status: ResultStatus
    structured: bool = True
    provider: Optional[str] = None
    model: Optional[str] = None
    cached: bool = False
    reason: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def native(self) -> bool:
        return self.status is ResultStatus.NATIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status.value,
            "structured": self.structured,
            "value": self.value,
            "provider": self.provider,
            "model": self.model,
            "cached": self.cached,
            "reason": self.reason,
            "meta": self.meta,
        }


def format_entry(entry: JournalEntry) -> str:
    head = " | ".join(part for part in (entry.date or "undated", entry.location, entry.title) if part)
    return f"- [{head}] {entry.text}"


def format_expense(expense: ExpenseRecord) -> str:
    parts = [expense.date or "undated", expense.category, f"{expense.amount} {expense.currency}"]
    if expense.description:
        parts.append(expense.description)
    return "- " + " | ".join(parts)


class AnalysisOrchestrator:
    """Entry point for application services.

    ``router`` is anything with ``generate(stage, request, deadline, fallback, meta)``
    returning an :class:`Outcome`; normally :class:`~nomadic_journal.llm.router.LLMRouter`.
    """

    def __init__(
        self,
        router,
        templates: TemplateRegistry,
        settings: LLMSettings,
        background_workers: int = 2,
    ) -> None:
        self.router = router
        self.templates = templates
        self.settings = settings
        self._background = ThreadPoolExecutor(
            max_workers=max(1, background_workers), thread_name_prefix="analysis"
        )

    # -- plumbing -----------------------------------------------------------

    def _deadline(self, deadline: Deadline | None) -> Deadline:
        if deadline is not None:
            return deadline
        seconds = self.settings.call_deadline_seconds
        return Deadline.never() if seconds is None else Deadline.after(seconds)

    @staticmethod
    def _count(count: int | None, default: int) -> int:
        if count is None:
            return default
        if count < 1:
            raise ValueError(f"count must be at least 1, got {count}")
        return count

    def _request(self, template: PromptTemplate, prompt: str) -> CompletionRequest:
        return CompletionRequest(
            prompt=prompt,
            system=template.system,
            template_id=template.template_id,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            top_p=self.settings.top_p,
            stop=self.settings.stop,
            timeout_seconds=self.settings.timeout_seconds,
        )

    def _fits(self, prompt: str) -> bool:
        return estimate_length(prompt) <= self.settings.prompt_budget

    def render_within_budget(
        self,
        template_name: str,
        items: Sequence[Any],
        build_data: Callable[[List[Any]], Dict[str, Any]],
        date_of: Callable[[Any], str],
        shorten: Callable[[Any, str], Any],
        text_of: Callable[[Any], str],
    ) -> tuple[str, int]:
        """Renders ``template_name`` over the largest representative subset that fits.

        Returns the prompt and how many items it includes.
        """
        ordered = order_by_date(items, date_of)[-self.settings.max_entries :]

        def render(subset: List[Any]) -> str:
            return self.templates.render(template_name, build_data(subset))

        chosen = select_within_budget(
            ordered,
            lambda subset: self._fits(render(subset)),
            self.settings.truncation_strategy,
        )
        prompt = render(chosen)
        if len(chosen) == 1 and not self._fits(prompt):
            only = chosen[0]
            text = shrink_text(text_of(only), lambda t: self._fits(render([shorten(only, t)])))
            chosen = [shorten(only, text)]
            prompt = render(chosen)
        if len(chosen) < len(items):
            logger.info(
                "%s: prompt budget kept %d of %d item(s) (%s)",
                template_name,
                len(chosen),
                len(items),
                self.settings.truncation_strategy,
            )
        return prompt, len(chosen)

    def _render_entries(self, template_name: str, entries: Sequence[JournalEntry], extra: Dict[str, Any]):
        def build(subset: List[JournalEntry]) -> Dict[str, Any]:
            data = {
                "entries": [format_entry(e) for e in subset],
                "entry_count": len(subset),
                "date_range": describe_date_range(e.date for e in subset),
                "locations": ", ".join(unique_locations(subset)) or "unspecified",
            }
            data.update(extra)
            return data

        return self.render_within_budget(
            template_name,
            entries,
            build,
            date_of=lambda e: e.date,
            shorten=lambda e, text: JournalEntry(text=text, date=e.date, location=e.location, title=e.title),
            text_of=lambda e: e.text,
        )

    def _degraded(self, kind: str, value: Any, reason: str) -> AnalysisResult:
        return AnalysisResult(kind=kind, value=value, status=ResultStatus.DEGRADED, reason=reason)

    def _from_outcome(self, kind: str, outcome: Outcome, value: Any, meta: Dict[str, Any]) -> AnalysisResult:
        if outcome.degraded:
            error = outcome.error
            reason = error.kind if isinstance(error, ProviderError) else "provider_error"
            return AnalysisResult(
                kind=kind,
                value=outcome.value,
                status=ResultStatus.DEGRADED,
                reason=reason,
                meta=meta,
            )
        result = outcome.result
        return AnalysisResult(
            kind=kind,
            value=value,
            status=ResultStatus.NATIVE,
            provider=result.provider,
            model=result.model,
            cached=result.cached,
            meta=meta,
        )

    def _run_text(
        self,
        kind: str,
        template_name: str,
        prompt: str,
        deadline: Deadline,
        fallback: Callable[[], Any],
        meta: Dict[str, Any],
    ) -> AnalysisResult:
        template = self.templates.get(template_name)
        outcome = self.router.generate(
            template_name,
            self._request(template, prompt),
            deadline,
            fallback=lambda _err: fallback(),
            meta={"kind": kind, **meta},
        )
        value = outcome.result.text if not outcome.degraded else outcome.value
        return self._from_outcome(kind, outcome, value, meta)

    def _run_structured(
        self,
        kind: str,
        template_name: str,
        prompt: str,
        deadline: Deadline,
        parse: Callable[[str], Any],
        fallback: Callable[[], Any],
        meta: Dict[str, Any],
    ) -> AnalysisResult:
        template = self.templates.get(template_name)
        outcome = self.router.generate(
            template_name,
            self._request(template, prompt),
            deadline,
            fallback=lambda _err: fallback(),
            meta={"kind": kind, **meta},
        )
        if outcome.degraded:
            return self._from_outcome(kind, outcome, None, meta)
        try:
            return self._from_outcome(kind, outcome, parse(outcome.result.text), meta)
        except MalformedResponse as exc:
            logger.warning("%s: malformed response (%s); re-prompting once", kind, exc)

        instruction = template.corrective_instruction or self.settings.corrective_instruction
        corrective = f"{prompt}\n\n{instruction}"
        retry = self.router.generate(
            template_name,
            self._request(template, corrective),
            deadline,
            fallback=lambda _err: fallback(),
            meta={"kind": kind, "corrective": True, **meta},
        )
        if retry.degraded:
            return self._from_outcome(kind, retry, None, meta)
        try:
            return self._from_outcome(kind, retry, parse(retry.result.text), {**meta, "corrected": True})
        except MalformedResponse as exc:
            logger.warning("%s: corrective attempt still malformed (%s); returning raw text", kind, exc)
        return AnalysisResult(
            kind=kind,
            value=retry.result.text,
            status=ResultStatus.DEGRADED,
            structured=False,
            provider=retry.result.provider,
            model=retry.result.model,
            cached=retry.result.cached,
            reason="malformed_response",
            meta=meta,
        )

    # -- use cases ----------------------------------------------------------

    def summarize_entries(self, entries: Iterable[Any], deadline: Deadline | None = None) -> AnalysisResult:
        kind = "summary"
        items = coerce_entries(entries)
        if not items:
            return AnalysisResult(kind=kind, value=EMPTY_SUMMARY, status=ResultStatus.EMPTY)
        if not self.settings.enabled:
            return self._degraded(kind, summary_fallback(items), "llm_disabled")
        prompt, used = self._render_entries("summarize_entries", items, {})
        return self._run_text(
            kind,
            "summarize_entries",
            prompt,
            self._deadline(deadline),
            lambda: summary_fallback(items),
            {"entries_used": used, "entries_total": len(items)},
        )

    def generate_reflective_prompts(
        self,
        entries: Iterable[Any],
        count: int | None = None,
        deadline: Deadline | None = None,
    ) -> AnalysisResult:
        kind = "reflective_prompts"
        count = self._count(count, self.settings.question_count)
        items = coerce_entries(entries)
        if not items:
            return AnalysisResult(kind=kind, value=STARTER_QUESTIONS[:count], status=ResultStatus.EMPTY)
        if not self.settings.enabled:
            return self._degraded(kind, questions_fallback(items, count), "llm_disabled")
        prompt, used = self._render_entries("reflective_prompts", items, {"question_count": count})
        return self._run_structured(
            kind,
            "reflective_prompts",
            prompt,
            self._deadline(deadline),
            lambda text: parse_questions(text, count),
            lambda: questions_fallback(items, count),
            {"entries_used": used, "entries_total": len(items)},
        )

    def extract_metadata(self, entries: Iterable[Any], deadline: Deadline | None = None) -> AnalysisResult:
        kind = "metadata"
        items = coerce_entries(entries)
        if not items:
            return AnalysisResult(kind=kind, value={}, status=ResultStatus.EMPTY)
        if not self.settings.enabled:
            return self._degraded(kind, metadata_fallback(items), "llm_disabled")
        prompt, used = self._render_entries("extract_metadata", items, {})
        return self._run_structured(
            kind,
            "extract_metadata",
            prompt,
            self._deadline(deadline),
            parse_metadata,
            lambda: metadata_fallback(items),
            {"entries_used": used, "entries_total": len(items)},
        )

    def recommend_places(
        self,
        entries: Iterable[Any],
        count: int | None = None,
        deadline: Deadline | None = None,
    ) -> AnalysisResult:
        kind = "places"
        count = self._count(count, self.settings.place_count)
        items = coerce_entries(entries)
        if not items:
            return AnalysisResult(kind=kind, value=[], status=ResultStatus.EMPTY)
        if not self.settings.enabled:
            return self._degraded(kind, places_fallback(items, count), "llm_disabled")
        prompt, used = self._render_entries("recommend_places", items, {"place_count": count})
        return self._run_structured(
            kind,
            "recommend_places",
            prompt,
            self._deadline(deadline),
            lambda text: parse_places(text, count),
            lambda: places_fallback(items, count),
            {"entries_used": used, "entries_total": len(items)},
        )

    def analyze_expenses(self, expenses: Iterable[Any], deadline: Deadline | None = None) -> AnalysisResult:
        kind = "expenses"
        items = coerce_expenses(expenses)
        if not items:
            value = {"summary": EMPTY_EXPENSES, "insights": [], "top_categories": []}
            return AnalysisResult(kind=kind, value=value, status=ResultStatus.EMPTY)
        if not self.settings.enabled:
            return self._degraded(kind, expenses_fallback(items), "llm_disabled")

        # Totals always describe the full set, even when the listing is truncated.
        totals = format_totals(currency_totals(items))
        by_category = "; ".join(
            f"{category}: {format_totals(amounts)}" for category, amounts in category_totals(items).items()
        )

        def build(subset: List[ExpenseRecord]) -> Dict[str, Any]:
            return {
                "expenses": [format_expense(e) for e in subset],
                "expense_count": len(items),
                "date_range": describe_date_range(e.date for e in items),
                "totals": totals,
                "category_totals": by_category,
            }

        prompt, used = self.render_within_budget(
            "analyze_expenses",
            items,
            build,
            date_of=lambda e: e.date,
            shorten=lambda e, text: ExpenseRecord(
                amount=e.amount, currency=e.currency, category=e.category, date=e.date, description=text
            ),
            text_of=lambda e: e.description,
        )
        return self._run_structured(
            kind,
            "analyze_expenses",
            prompt,
            self._deadline(deadline),
            parse_expense_analysis,
            lambda: expenses_fallback(items),
            {"expenses_used": used, "expenses_total": len(items)},
        )

    # -- background execution and status -----------------------------------

    def submit(self, operation: str, *args: Any, **kwargs: Any) -> "Future[AnalysisResult]":
        """Runs a use case off the calling thread."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        return self._background.submit(getattr(self, operation), *args, **kwargs)

    def provider_status(self) -> Dict[str, Dict[str, Any]]:
        return self.router.provider_status()

    def close(self) -> None:
        self._background.shutdown(wait=False, cancel_futures=True)
        close = getattr(self.router, "close", None)
        if close is not None:
            close()
