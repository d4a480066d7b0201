"""Loads prompt template overrides from templates.yaml with built-in fallbacks."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .prompts import PromptTemplate, TemplateError, TemplateRegistry, default_registry

logger = logging.getLogger(__name__)


def _template_from_mapping(name: str, definition: Dict[str, Any]) -> PromptTemplate:
    if not isinstance(definition, dict):
        raise TemplateError(f"Template {name}: expected a mapping, got {type(definition).__name__}")
    body = definition.get("body")
    if not isinstance(body, str) or not body.strip():
        raise TemplateError(f"Template {name}: 'body' is required")
    return PromptTemplate(
        name=name,
        version=str(definition.get("version", "1")),
        body=body,
        system=str(definition.get("system") or ""),
        output=str(definition.get("output", "text")),
        corrective_instruction=str(definition.get("corrective_instruction") or ""),
    )


def parse_templates(text: str) -> List[PromptTemplate]:
    try:
        parsed = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise TemplateError(f"Invalid templates YAML: {exc}") from exc
    section = parsed.get("templates", parsed) if isinstance(parsed, dict) else None
    if not isinstance(section, dict):
        raise TemplateError("templates file must map template names to definitions")
    return [_template_from_mapping(str(name), definition) for name, definition in section.items()]


def load_templates(templates_path: str | None) -> TemplateRegistry:
    """Returns built-in templates, replaced wholesale by any defined in the file."""
    registry = default_registry()
    if not templates_path:
        return registry
    path = Path(templates_path)
    if not path.exists():
        return registry

    overrides = parse_templates(path.read_text(encoding="utf-8"))
    for template in overrides:
        if template.name in registry:
            previous = registry.get(template.name)
            logger.info(
                "Template %s replaced: v%s -> v%s", template.name, previous.version, template.version
            )
        else:
            logger.info("Template %s added (v%s)", template.name, template.version)
    return registry.with_templates(overrides)
