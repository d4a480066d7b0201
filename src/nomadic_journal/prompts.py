"""Prompt templates and the registry that renders them."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from string import Formatter
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Tuple

OUTPUT_KINDS = ("text", "json")

_SCALARS = (str, int, float, Decimal, bool)


class TemplateError(Exception):
    """Template missing or malformed."""


class TemplateNotFound(TemplateError):
    pass


class RenderError(TemplateError):
    pass


def _placeholders(body: str) -> Tuple[str, ...]:
    names: list[str] = []
    try:
        parsed = list(Formatter().parse(body))
    except ValueError as exc:
        raise TemplateError(f"Unbalanced braces in template: {exc}") from exc
    for _, field_name, format_spec, conversion in parsed:
        if field_name is None:
            continue
        if not field_name.isidentifier():
            raise TemplateError(f"Unsupported placeholder: {{{field_name}}}")
        if format_spec or conversion:
            raise TemplateError(f"Format specs are not supported: {{{field_name}}}")
        if field_name not in names:
            names.append(field_name)
    return tuple(names)


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    version: str
    body: str
    system: str = ""
    output: str = "text"
    corrective_instruction: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise TemplateError("Template name is required")
        if self.output not in OUTPUT_KINDS:
            raise TemplateError(f"Template {self.name}: unknown output kind {self.output!r}")
        _placeholders(self.body)

    @property
    def template_id(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def placeholders(self) -> Tuple[str, ...]:
        return _placeholders(self.body)


def _format_value(template: str, key: str, value: Any) -> str:
    if isinstance(value, _SCALARS):
        return str(value)
    if isinstance(value, (list, tuple)):
        lines = []
        for item in value:
            if not isinstance(item, _SCALARS):
                raise RenderError(
                    f"Template {template}: '{key}' items must be scalars, got {type(item).__name__}"
                )
            lines.append(str(item))
        return "\n".join(lines)
    raise RenderError(f"Template {template}: '{key}' has unsupported type {type(value).__name__}")


def estimate_length(text: str) -> int:
    """Rough token count (about four characters per token); monotonic in length."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class TemplateRegistry:
    """Immutable name -> template map. Build a new registry to change templates."""

    def __init__(self, templates: Iterable[PromptTemplate] = ()) -> None:
        by_name: Dict[str, PromptTemplate] = {}
        for template in templates:
            by_name[template.name] = template
        self._templates: Mapping[str, PromptTemplate] = MappingProxyType(by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._templates))

    def get(self, name: str) -> PromptTemplate:
        try:
            return self._templates[name]
        except KeyError:
            raise TemplateNotFound(f"Unknown template: {name}") from None

    def with_templates(self, templates: Iterable[PromptTemplate]) -> "TemplateRegistry":
        merged = dict(self._templates)
        for template in templates:
            merged[template.name] = template
        return TemplateRegistry(merged.values())

    def render(self, name: str, data: Mapping[str, Any]) -> str:
        template = self.get(name)
        values: Dict[str, str] = {}
        for key in template.placeholders:
            if key not in data:
                raise RenderError(f"Template {name}: missing value for '{key}'")
            values[key] = _format_value(name, key, data[key])
        return template.body.format_map(values)


BUILTIN_TEMPLATES: Tuple[PromptTemplate, ...] = (
    PromptTemplate(
        name="summarize_entries",
        version="1",
        system=(
            "You are a warm, precise travel-journal assistant. Never invent places, people "
            "or events that are not in the entries."
        ),
        body=(
            "Summarize these {entry_count} travel journal entries ({date_range}) in one short "
            "paragraph. Mention the places visited and the highlights.\n\n"
            "Locations: {locations}\n\n"
            "Entries:\n{entries}"
        ),
    ),
    PromptTemplate(
        name="reflective_prompts",
        version="1",
        output="json",
        system="You help travellers reflect on their journeys with thoughtful, open questions.",
        body=(
            "Read these journal entries written in {locations} ({date_range}) and write "
            "{question_count} reflective questions the traveller could journal about next.\n"
            'Respond with JSON only: {{"questions": ["...", "..."]}}\n\n'
            "Entries:\n{entries}"
        ),
        corrective_instruction=(
            'Respond only with a JSON object of the form {"questions": ["question one", "question two"]}.'
        ),
    ),
    PromptTemplate(
        name="extract_metadata",
        version="1",
        output="json",
        system="You extract structured metadata from travel journals. Only report what is stated.",
        body=(
            "Extract metadata from these journal entries.\n"
            "Respond with JSON only, using exactly these keys:\n"
            '{{"locations": [..], "people": [..], "themes": [..], "mood": "one word or null"}}\n\n'
            "Entries:\n{entries}"
        ),
    ),
    PromptTemplate(
        name="recommend_places",
        version="1",
        output="json",
        system="You are a well-travelled guide who tailors suggestions to a traveller's journal.",
        body=(
            "Based on the places and experiences in these entries (visited: {locations}), "
            "recommend {place_count} places to visit next that this traveller would enjoy.\n"
            'Respond with JSON only: {{"places": [{{"name": "...", "reason": "..."}}]}}\n\n'
            "Entries:\n{entries}"
        ),
    ),
    PromptTemplate(
        name="analyze_expenses",
        version="1",
        output="json",
        system=(
            "You review travel spending. Amounts are in their original currencies; do not "
            "convert between currencies."
        ),
        body=(
            "Review these {expense_count} travel expenses ({date_range}).\n"
            "Totals per currency: {totals}\n"
            "Totals per category: {category_totals}\n\n"
            "Respond with JSON only:\n"
            '{{"summary": "...", "insights": ["..."], "top_categories": ["..."]}}\n\n'
            "Expenses:\n{expenses}"
        ),
    ),
)


def default_registry() -> TemplateRegistry:
    return TemplateRegistry(BUILTIN_TEMPLATES)
