import time

import pytest

from nomadic_journal.config import build_settings
from nomadic_journal.fallbacks import EMPTY_SUMMARY, STARTER_QUESTIONS
from nomadic_journal.journal import coerce_entries
from nomadic_journal.llm.cache import InMemoryCacheStore
from nomadic_journal.llm.deadline import Deadline
from nomadic_journal.llm.router import LLMRouter
from nomadic_journal.llm.types import CompletionResult, ProviderError, ProviderTimeout, ProviderUnavailable, Unauthorized
from nomadic_journal.orchestrator import AnalysisOrchestrator, ResultStatus
from nomadic_journal.prompts import default_registry, estimate_length

KYOTO_ENTRIES = [
    {"date": "2024-04-01", "location": "Kyoto, Japan", "text": "Walked the torii gates of Fushimi Inari at dawn."},
    {"date": "2024-04-02", "location": "Kyoto, Japan", "text": "Tea ceremony in Gion, then a long walk by the river."},
    {"date": "2024-04-03", "location": "Kyoto, Japan", "text": "Bamboo grove in Arashiyama, crowded but magical."},
]

EXPENSES = [
    {"amount": "12.50", "currency": "eur", "category": "Food", "date": "2024-04-01"},
    {"amount": "18.00", "currency": "EUR", "category": "food", "date": "2024-04-02"},
    {"amount": "1200", "currency": "JPY", "category": "transport", "date": "2024-04-03", "description": "JR pass top-up"},
]


class FakeProvider:
    """Returns queued responses (or raises queued errors) and records prompts."""

    name = "fake"

    def __init__(self, responses=(), always=None):
        self.responses = list(responses)
        self.always = always
        self.prompts = []

    @property
    def calls(self):
        return len(self.prompts)

    def complete(self, request, deadline):
        self.prompts.append(request.prompt)
        if self.always is not None:
            if isinstance(self.always, ProviderError):
                raise self.always
            return CompletionResult(text=self.always, provider=self.name, model=request.model)
        response = self.responses.pop(0)
        if isinstance(response, ProviderError):
            raise response
        return CompletionResult(text=response, provider=self.name, model=request.model, tokens_in=10, tokens_out=5)


def make_orchestrator(provider, llm=None, analysis=None, resilience=None):
    settings = build_settings(
        {
            "llm": {"enabled": True, **(llm or {})},
            "routing": {"default": ["fake:model-a"]},
            "resilience": {"max_attempts": 2, "base_delay_seconds": 0, "jitter_seconds": 0, **(resilience or {})},
            "analysis": analysis or {},
        }
    )
    router = LLMRouter(settings, providers={"fake": provider}, cache_store=InMemoryCacheStore(), threaded=False)
    return AnalysisOrchestrator(router, default_registry(), settings)


def test_kyoto_summary_is_native_then_cached():
    provider = FakeProvider(always="Three calm days in Kyoto: shrines, tea and bamboo.")
    orchestrator = make_orchestrator(provider)

    first = orchestrator.summarize_entries(KYOTO_ENTRIES)
    second = orchestrator.summarize_entries(KYOTO_ENTRIES)

    assert first.status is ResultStatus.NATIVE
    assert first.value == "Three calm days in Kyoto: shrines, tea and bamboo."
    assert (first.provider, first.model) == ("fake", "model-a")
    assert first.cached is False
    assert second.cached is True
    assert second.value == first.value
    assert provider.calls == 1
    assert "Kyoto, Japan" in provider.prompts[0]
    assert "2024-04-01 to 2024-04-03" in provider.prompts[0]


def test_empty_input_never_calls_a_provider():
    provider = FakeProvider(always="unused")
    orchestrator = make_orchestrator(provider)

    summary = orchestrator.summarize_entries([])
    questions = orchestrator.generate_reflective_prompts([], count=2)
    metadata = orchestrator.extract_metadata([])
    places = orchestrator.recommend_places([])
    expenses = orchestrator.analyze_expenses([])

    assert summary.status is ResultStatus.EMPTY
    assert summary.value == EMPTY_SUMMARY
    assert questions.value == STARTER_QUESTIONS[:2]
    assert metadata.value == {}
    assert places.value == []
    assert expenses.value["insights"] == []
    assert all(r.status is ResultStatus.EMPTY for r in (questions, metadata, places, expenses))
    assert provider.calls == 0


def test_summary_falls_back_when_provider_always_times_out():
    provider = FakeProvider(always=ProviderTimeout("too slow"))
    orchestrator = make_orchestrator(provider)

    result = orchestrator.summarize_entries(KYOTO_ENTRIES)

    assert result.status is ResultStatus.DEGRADED
    assert result.reason == "timeout"
    assert result.value == (
        "You wrote 3 journal entries between 2024-04-01 and 2024-04-03 in Kyoto, Japan, 27 words in total."
    )
    assert provider.calls == 2


def test_expired_deadline_degrades_without_calling_provider():
    provider = FakeProvider(always="unused")
    orchestrator = make_orchestrator(provider)

    result = orchestrator.summarize_entries(KYOTO_ENTRIES, deadline=Deadline(0))

    assert result.status is ResultStatus.DEGRADED
    assert result.reason == "timeout"
    assert provider.calls == 0


def test_malformed_questions_are_corrected_once():
    provider = FakeProvider(responses=["Here are some thoughts!", '{"questions": ["What surprised you?", "Who did you meet?"]}'])
    orchestrator = make_orchestrator(provider)

    result = orchestrator.generate_reflective_prompts(KYOTO_ENTRIES, count=2)
    template = orchestrator.templates.get("reflective_prompts")

    assert result.status is ResultStatus.NATIVE
    assert result.value == ["What surprised you?", "Who did you meet?"]
    assert result.meta["corrected"] is True
    assert provider.calls == 2
    assert provider.prompts[1] == f"{provider.prompts[0]}\n\n{template.corrective_instruction}"


def test_twice_malformed_output_is_returned_unstructured():
    provider = FakeProvider(responses=["not json", "still not json"])
    orchestrator = make_orchestrator(provider)

    result = orchestrator.extract_metadata(KYOTO_ENTRIES)

    assert result.status is ResultStatus.DEGRADED
    assert result.structured is False
    assert result.reason == "malformed_response"
    assert result.value == "still not json"
    assert provider.prompts[1].endswith(orchestrator.settings.corrective_instruction)


def test_structured_results_parse_native_output():
    provider = FakeProvider(
        responses=[
            '{"locations": ["Kyoto"], "people": [], "themes": ["temples"], "mood": "calm"}',
            '```json\n{"places": [{"name": "Nara", "reason": "deer park"}, "Kanazawa"]}\n```',
        ]
    )
    orchestrator = make_orchestrator(provider)

    metadata = orchestrator.extract_metadata(KYOTO_ENTRIES)
    places = orchestrator.recommend_places(KYOTO_ENTRIES, count=1)

    assert metadata.value["themes"] == ["temples"]
    assert metadata.value["mood"] == "calm"
    assert places.value == [{"name": "Nara", "reason": "deer park"}]
    assert places.native


def test_expenses_fall_back_to_local_totals():
    provider = FakeProvider(always=Unauthorized("bad key"))
    orchestrator = make_orchestrator(provider)

    result = orchestrator.analyze_expenses(EXPENSES)

    assert result.status is ResultStatus.DEGRADED
    assert result.reason == "unauthorized"
    assert result.value["summary"] == "You recorded 3 expenses totalling 30.50 EUR, 1200 JPY."
    assert result.value["top_categories"] == ["food", "transport"]
    assert provider.calls == 1


def test_expense_prompt_carries_totals_per_currency():
    provider = FakeProvider(always='{"summary": "Mostly food.", "insights": [], "top_categories": ["food"]}')
    orchestrator = make_orchestrator(provider)

    result = orchestrator.analyze_expenses(EXPENSES)

    assert result.native
    assert result.value["summary"] == "Mostly food."
    assert "Totals per currency: 30.50 EUR, 1200 JPY" in provider.prompts[0]
    assert "food: 30.50 EUR; transport: 1200 JPY" in provider.prompts[0]


def test_offline_mode_returns_local_results():
    provider = FakeProvider(always="unused")
    orchestrator = make_orchestrator(provider, llm={"enabled": False})

    summary = orchestrator.summarize_entries(KYOTO_ENTRIES)
    places = orchestrator.recommend_places(KYOTO_ENTRIES)

    assert summary.status is ResultStatus.DEGRADED
    assert summary.reason == "llm_disabled"
    assert places.value[0]["name"] == "Kyoto, Japan"
    assert provider.calls == 0


def test_long_history_is_truncated_to_budget_deterministically():
    entries = [
        {"date": f"2024-05-{day:02d}", "location": "Lisbon", "text": f"Day {day}: " + "tram rides and pasteis " * 5}
        for day in range(1, 31)
    ]
    provider = FakeProvider(always="A month in Lisbon.")
    orchestrator = make_orchestrator(provider, analysis={"prompt_budget": 250})

    result = orchestrator.summarize_entries(entries)
    prompt, used = orchestrator._render_entries("summarize_entries", coerce_entries(entries), {})
    again, used_again = orchestrator._render_entries("summarize_entries", coerce_entries(entries), {})

    assert result.native
    assert 0 < result.meta["entries_used"] < 30
    assert result.meta["entries_total"] == 30
    assert estimate_length(provider.prompts[0]) <= 250
    assert "2024-05-30" in provider.prompts[0]
    assert "2024-05-01" not in provider.prompts[0]
    assert (prompt, used) == (again, used_again)
    assert prompt == provider.prompts[0]


def test_single_oversized_entry_is_shortened():
    entry = {"date": "2024-06-01", "location": "Oaxaca", "text": "mole " * 2000}
    provider = FakeProvider(always="Oaxaca.")
    orchestrator = make_orchestrator(provider, analysis={"prompt_budget": 200})

    result = orchestrator.summarize_entries([entry])

    assert result.native
    assert estimate_length(provider.prompts[0]) <= 200
    assert "..." in provider.prompts[0]


def test_submit_runs_in_background():
    provider = FakeProvider(always="Background summary.")
    orchestrator = make_orchestrator(provider)
    try:
        future = orchestrator.submit("summarize_entries", KYOTO_ENTRIES)
        assert future.result(timeout=5).value == "Background summary."
    finally:
        orchestrator.close()


def test_same_day_entries_render_a_single_date():
    entries = [dict(entry, date="2024-04-01") for entry in KYOTO_ENTRIES]
    provider = FakeProvider(always="One long day in Kyoto.")
    orchestrator = make_orchestrator(provider)

    result = orchestrator.summarize_entries(entries)

    assert result.native
    assert "(2024-04-01)" in provider.prompts[0]
    assert "2024-04-01 to" not in provider.prompts[0]
    assert "Kyoto, Japan" in provider.prompts[0]


def test_open_circuit_degrades_without_calling_provider():
    provider = FakeProvider(always=ProviderUnavailable("down"))
    orchestrator = make_orchestrator(provider, resilience={"failure_threshold": 1, "max_attempts": 1})

    first = orchestrator.summarize_entries(KYOTO_ENTRIES)
    assert first.status is ResultStatus.DEGRADED
    assert first.reason == "unavailable"
    assert orchestrator.provider_status()["fake"]["state"] == "open"

    start = time.monotonic()
    second = orchestrator.summarize_entries(KYOTO_ENTRIES[:2])
    elapsed = time.monotonic() - start

    assert second.status is ResultStatus.DEGRADED
    assert second.reason == "circuit_open"
    assert "Kyoto, Japan" in second.value
    assert provider.calls == 1
    assert elapsed < 0.5


def test_zero_count_is_rejected_and_none_uses_default():
    provider = FakeProvider(always="unused")
    orchestrator = make_orchestrator(provider, llm={"enabled": False}, analysis={"question_count": 4})

    with pytest.raises(ValueError):
        orchestrator.generate_reflective_prompts(KYOTO_ENTRIES, count=0)
    with pytest.raises(ValueError):
        orchestrator.recommend_places(KYOTO_ENTRIES, count=-1)

    assert len(orchestrator.generate_reflective_prompts(KYOTO_ENTRIES, count=None).value) == 4
    assert len(orchestrator.generate_reflective_prompts(KYOTO_ENTRIES, count=2).value) == 2
    assert provider.calls == 0
