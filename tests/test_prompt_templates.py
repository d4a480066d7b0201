import pytest

from nomadic_journal.prompts import (
    PromptTemplate,
    RenderError,
    TemplateError,
    TemplateNotFound,
    TemplateRegistry,
    default_registry,
    estimate_length,
)
from nomadic_journal.template_loader import load_templates, parse_templates

ENTRY_DATA = {
    "entry_count": 2,
    "date_range": "2024-04-01 to 2024-04-02",
    "locations": "Kyoto, Japan",
    "entries": ["- [2024-04-01] Fushimi Inari at dawn.", "- [2024-04-02] Tea in Gion."],
}


def test_render_is_deterministic_and_fills_every_placeholder():
    registry = default_registry()

    first = registry.render("summarize_entries", ENTRY_DATA)
    second = registry.render("summarize_entries", dict(ENTRY_DATA))

    assert first == second
    assert "Fushimi Inari at dawn.\n- [2024-04-02] Tea in Gion." in first
    assert "{" not in first


def test_json_templates_keep_literal_braces():
    rendered = default_registry().render("reflective_prompts", {**ENTRY_DATA, "question_count": 3})

    assert '{"questions": ["...", "..."]}' in rendered
    assert "write 3 reflective questions" in rendered


def test_missing_value_and_unknown_template_are_errors():
    registry = default_registry()

    with pytest.raises(RenderError):
        registry.render("summarize_entries", {"entries": []})
    with pytest.raises(TemplateNotFound):
        registry.render("write_poem", ENTRY_DATA)


def test_non_scalar_values_are_rejected():
    registry = TemplateRegistry([PromptTemplate(name="t", version="1", body="Data: {data}")])

    assert registry.render("t", {"data": ["a", 1, 2.5]}) == "Data: a\n1\n2.5"
    with pytest.raises(RenderError):
        registry.render("t", {"data": {"nested": True}})
    with pytest.raises(RenderError):
        registry.render("t", {"data": [["nested"]]})


def test_unsupported_placeholders_fail_at_definition():
    with pytest.raises(TemplateError):
        PromptTemplate(name="t", version="1", body="Hello {user.name}")
    with pytest.raises(TemplateError):
        PromptTemplate(name="t", version="1", body="Total {amount:.2f}")
    with pytest.raises(TemplateError):
        PromptTemplate(name="t", version="1", body="Broken {brace")
    with pytest.raises(TemplateError):
        PromptTemplate(name="t", version="1", body="x", output="xml")


def test_template_identity_includes_version():
    template = default_registry().get("extract_metadata")

    assert template.template_id == "extract_metadata@1"
    assert template.placeholders == ("entries",)


def test_estimate_length_grows_with_text():
    assert estimate_length("") == 0
    assert estimate_length("abcd") == 1
    assert estimate_length("abcde") == 2
    assert estimate_length("a" * 400) < estimate_length("a" * 401)


def test_registry_is_replaced_not_mutated():
    registry = default_registry()
    custom = PromptTemplate(name="summarize_entries", version="2", body="Short: {entries}")

    updated = registry.with_templates([custom])

    assert registry.get("summarize_entries").version == "1"
    assert updated.get("summarize_entries").version == "2"
    assert updated.names() == registry.names()


def test_loader_overrides_builtin_templates(tmp_path):
    path = tmp_path / "templates.yaml"
    path.write_text(
        "templates:\n"
        "  summarize_entries:\n"
        "    version: 2\n"
        "    body: 'Briefly: {entries}'\n"
        "  packing_list:\n"
        "    body: 'Pack for {locations}'\n",
        encoding="utf-8",
    )

    registry = load_templates(str(path))

    assert registry.get("summarize_entries").template_id == "summarize_entries@2"
    assert registry.get("summarize_entries").system == ""
    assert registry.get("reflective_prompts").version == "1"
    assert "packing_list" in registry


def test_loader_uses_builtins_when_file_missing(tmp_path):
    registry = load_templates(str(tmp_path / "nope.yaml"))

    assert registry.names() == default_registry().names()
    assert load_templates(None).names() == default_registry().names()


def test_loader_rejects_bad_definitions():
    with pytest.raises(TemplateError):
        parse_templates("summarize_entries:\n  version: 2\n")
    with pytest.raises(TemplateError):
        parse_templates("- just\n- a list\n")
    with pytest.raises(TemplateError):
        parse_templates("templates: [unclosed")
