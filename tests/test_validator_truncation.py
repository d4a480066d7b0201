import pytest

from nomadic_journal.truncation import evenly_sampled, most_recent, order_by_date, select_within_budget, shrink_text
from nomadic_journal.validators import (
    MalformedResponse,
    extract_json,
    parse_expense_analysis,
    parse_metadata,
    parse_places,
    parse_questions,
    truncate_to_limit,
)


def test_truncate_to_limit():
    content = "0123456789012345"

    truncated = truncate_to_limit(content, 10)
    assert len(truncated) <= 10
    assert truncated.endswith("...")
    assert truncate_to_limit("short", 10) == "short"


def test_extract_json_tolerates_fences_and_chatter():
    fenced = 'Sure! Here you go:\n```json\n{"questions": ["Why Kyoto?"]}\n```'
    chatty = 'The answer is {"mood": "calm"} and nothing else.'

    assert extract_json(fenced) == {"questions": ["Why Kyoto?"]}
    assert extract_json(chatty) == {"mood": "calm"}
    with pytest.raises(MalformedResponse):
        extract_json("no json at all")


def test_parse_questions_accepts_list_or_object_and_limits():
    assert parse_questions('["A?", "B?", "C?"]', 2) == ["A?", "B?"]
    assert parse_questions('{"questions": [" A? ", ""]}', 5) == ["A?"]
    with pytest.raises(MalformedResponse):
        parse_questions('{"questions": []}', 5)
    with pytest.raises(MalformedResponse):
        parse_questions('{"questions": [1, 2]}', 5)


def test_parse_metadata_normalises_fields():
    parsed = parse_metadata('{"locations": ["Kyoto"], "people": ["Aiko"], "mood": " content "}')

    assert parsed == {"locations": ["Kyoto"], "people": ["Aiko"], "themes": [], "mood": "content"}
    with pytest.raises(MalformedResponse):
        parse_metadata('["Kyoto"]')


def test_parse_places_accepts_names_and_objects():
    text = '{"places": ["Nara", {"name": "Osaka", "reason": "street food"}]}'

    assert parse_places(text, 5) == [
        {"name": "Nara", "reason": ""},
        {"name": "Osaka", "reason": "street food"},
    ]
    with pytest.raises(MalformedResponse):
        parse_places('{"places": [{"reason": "no name"}]}', 5)


def test_parse_expense_analysis_requires_summary():
    parsed = parse_expense_analysis('{"summary": "Mostly food.", "insights": ["Cheap trains"]}')

    assert parsed["summary"] == "Mostly food."
    assert parsed["top_categories"] == []
    with pytest.raises(MalformedResponse):
        parse_expense_analysis('{"insights": []}')


def test_order_by_date_is_stable_with_undated_first():
    items = [("b", "2024-04-02"), ("x", ""), ("a", "2024-04-01"), ("c", "2024-04-02")]

    ordered = order_by_date(items, lambda item: item[1])

    assert [name for name, _ in ordered] == ["x", "a", "b", "c"]


def test_selection_strategies():
    items = list(range(10))

    assert most_recent(items, 3) == [7, 8, 9]
    assert evenly_sampled(items, 4) == [0, 3, 6, 9]
    assert evenly_sampled(items, 20) == items


def test_select_within_budget_picks_largest_fitting_subset():
    items = list(range(10))

    chosen = select_within_budget(items, lambda subset: len(subset) <= 4, "most_recent")
    assert chosen == [6, 7, 8, 9]
    assert select_within_budget(items, lambda subset: False, "evenly_sampled") == [9]
    assert select_within_budget(items, lambda subset: True) == items


def test_shrink_text_is_idempotent():
    text = "word " * 100

    once = shrink_text(text, lambda t: len(t) <= 40)
    twice = shrink_text(once, lambda t: len(t) <= 40)

    assert len(once) <= 40
    assert once.endswith("...")
    assert once == twice
