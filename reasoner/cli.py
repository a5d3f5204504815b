#!/usr/bin/env python3
"""
CLI Entry Point — answer one query from the terminal
====================================================
Usage:
    python -m reasoner --query "What is the latest Python release?"
    python -m reasoner --query "..." --facts facts.yaml --show-plan --verbose
    python -m reasoner --list-plans --checkpoint-db ./checkpoints.db

Web search, page reading and the reasoning tool are supplied by the host
application; from the terminal only the built-in tools (GET_DATE, RESPOND)
are registered, so information gathering leans on direct synthesis.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .api_clients import LLMClient
from .checkpoint_store import CheckpointStore
from .collaborators import Collaborators
from .config import ReasonerConfig, load_config
from .engine import MetaReasoner
from .llm_collaborators import (
    FactMemory, LLMDecomposer, LLMIntentClassifier, LLMSynthesizer, LLMToolSelector,
)
from .models import Plan, ToolName
from .tools import ToolRegistry
from .tracing import shutdown_tracing

logger = logging.getLogger("reasoner.cli")


def setup_logging(verbose: bool = False, level: int = logging.INFO):
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def load_facts(path: Optional[str]) -> list[dict]:
    """Facts file: a YAML (or JSON) list of {type, value} mappings."""
    if not path:
        return []
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Facts file not found: {p}")
    with open(p, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or []
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ValueError(f"'{p}': expected a list of {{type, value}} mappings")
    return raw


def build_collaborators(config: ReasonerConfig, facts: list[dict],
                        registry: Optional[ToolRegistry] = None) -> Collaborators:
    client = LLMClient(config.default_model, config.fallback_model)
    registry = registry or ToolRegistry(timeout=config.search_timeout_seconds)
    descriptions = {
        name: text for name, text in registry.describe().items()
        if config.web_search_enabled or name != ToolName.WEB_SEARCH.value
    }
    return Collaborators(
        memory=FactMemory(client, facts),
        intent_classifier=LLMIntentClassifier(client),
        tool_selector=LLMToolSelector(client, descriptions),
        tool_runner=registry,
        synthesizer=LLMSynthesizer(client),
        decomposer=LLMDecomposer(client),
    )


def _print_plan(plan: Plan) -> None:
    print("\n--- PLAN ---")
    if plan.decomposition_error:
        print(f"(default plan: {plan.decomposition_error})")
    for i, task in enumerate(plan.steps, 1):
        deps = ", ".join(task.dependencies) or "-"
        print(f"  {i}. [{task.state.value:<11}] {task.id:<20} {task.type:<22} deps: {deps}")
    for record in plan.results:
        alt = f" via {record.alternative}" if record.alternative else ""
        mark = "OK" if record.result.success else "--"
        print(f"  {mark} {record.step.id}{alt}")
    print(f"Status: {plan.state_manager.get_task_status()}")
    if plan.error:
        print(f"Last error: {plan.error}")


async def _async_query(args, config: ReasonerConfig) -> int:
    facts = load_facts(args.facts)
    reasoner = MetaReasoner.from_config(build_collaborators(config, facts), config)
    try:
        plan = await reasoner.run(args.query, facts=facts, history_context=args.history)
    finally:
        await reasoner.close()
    if args.show_plan:
        _print_plan(plan)
    print("\n" + reasoner.final_answer(plan))
    return 0


async def _async_list_plans(db_path: str) -> None:
    store = CheckpointStore(db_path)
    try:
        plans = await store.list_plans()
        if not plans:
            print("No saved plans.")
            return
        print(f"{'ID':<14} {'Done':<6} {'Updated':<17} Query")
        print("-" * 70)
        for p in plans:
            updated = datetime.fromtimestamp(p["updated_at"]).strftime("%Y-%m-%d %H:%M")
            print(f"{p['plan_id']:<14} {'yes' if p['completed'] else 'no':<6} "
                  f"{updated:<17} {p['query'][:40]}")
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Meta-reasoning planner — decompose, execute and recover"
    )
    parser.add_argument("--query", "-q", type=str, default="", help="Question to answer")
    parser.add_argument("--facts", type=str, default="",
                        help="YAML/JSON list of known {type, value} facts")
    parser.add_argument("--history", type=str, default="",
                        help="Recent conversation context")
    parser.add_argument("--config", "-c", type=str, default="",
                        help="YAML config file (overrides environment)")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--show-plan", action="store_true",
                        help="Print the executed plan and task status")
    parser.add_argument("--tracing", action="store_true",
                        help="Enable OpenTelemetry spans")
    parser.add_argument("--otlp-endpoint", type=str, default=None,
                        help="OTLP gRPC collector, e.g. http://localhost:4317")
    parser.add_argument("--checkpoint-db", type=str, default=None,
                        help="SQLite file for the checkpoint log")
    parser.add_argument("--list-plans", action="store_true",
                        help="List plans saved in the checkpoint log")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv(override=True)  # .env values win over empty system env vars
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config or None, dotenv=False)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.checkpoint_db:
        config.checkpoint_db = args.checkpoint_db
    if args.tracing:
        config.tracing = True
    if args.otlp_endpoint:
        config.otlp_endpoint = args.otlp_endpoint
    setup_logging(args.verbose, config.logging_level)

    if args.list_plans:
        if not config.checkpoint_db:
            parser.error("--list-plans requires --checkpoint-db or REASONER_CHECKPOINT_DB")
        asyncio.run(_async_list_plans(config.checkpoint_db))
        return 0

    if not args.query:
        parser.error("--query is required")

    try:
        return asyncio.run(_async_query(args, config))
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    sys.exit(main())
