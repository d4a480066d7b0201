"""Command line entrypoint for the journal analysis layer."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv

from .config import build_settings, load_settings
from .llm.router import LLMRouter
from .models import apply_migrations
from .orchestrator import AnalysisOrchestrator
from .prompts import TemplateError
from .template_loader import load_templates

logger = logging.getLogger(__name__)

ANALYSIS_COMMANDS = {
    "summarize": "summarize_entries",
    "prompts": "generate_reflective_prompts",
    "metadata": "extract_metadata",
    "places": "recommend_places",
    "expenses": "analyze_expenses",
}


def configure_logging(config: Dict[str, Any]) -> None:
    level_name = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def read_records(path: str) -> List[Dict[str, Any]]:
    """Reads a YAML or JSON list of mappings (a top-level 'items' key is also accepted)."""
    with Path(path).open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("items") or data.get("entries") or data.get("expenses") or []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"{path}: expected a list of records")
    return data


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nomadic journal LLM analysis")
    parser.add_argument("--settings", default="config/settings.yaml", help="Path to settings.yaml")
    parser.add_argument("--offline", action="store_true", help="Skip providers and return degraded results")

    subparsers = parser.add_subparsers(dest="command")
    for name, operation in ANALYSIS_COMMANDS.items():
        sub = subparsers.add_parser(name, help=f"Run {operation.replace('_', ' ')}")
        sub.add_argument("input", help="YAML/JSON file with a list of entries or expenses")
        if name in ("prompts", "places"):
            sub.add_argument("--count", type=int, default=None)
    subparsers.add_parser(
        "status", help="Show configured providers and recorded LLM costs; circuit health is per process"
    )
    subparsers.add_parser("cache-sweep", help="Delete expired cache entries")
    subparsers.add_parser("init-db", help="Apply SQLite migrations only")
    return parser


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    config = load_settings(args.settings)
    if args.offline:
        config["llm"]["enabled"] = False
    configure_logging(config)
    settings = build_settings(config)

    if args.command == "init-db":
        apply_migrations(settings.database_path)
        print(f"Database initialized at {settings.database_path}")
        return 0

    router = LLMRouter.from_settings(settings)
    templates = load_templates(config.get("paths", {}).get("templates_path"))
    orchestrator = AnalysisOrchestrator(router, templates, settings)
    try:
        if args.command == "status":
            payload = {"providers": sorted(router.providers), "costs": router.cost_summary()}
        elif args.command == "cache-sweep":
            payload = {"evicted": router.sweep_cache()}
        else:
            operation = getattr(orchestrator, ANALYSIS_COMMANDS[args.command])
            records = read_records(args.input)
            kwargs = {"count": args.count} if getattr(args, "count", None) is not None else {}
            payload = operation(records, **kwargs).to_dict()
    except (OSError, ValueError, TemplateError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        orchestrator.close()

    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
