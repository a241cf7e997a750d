"""
CLI entry point for running goal tests against a live agent endpoint.

Usage:
    python -m agent_harness.run_goal_tests --endpoint http://localhost:3000/api/v1/prediction/abc
    python -m agent_harness.run_goal_tests --tests GOAL-HAPPY-001 GOAL-ERR-001 --concurrency 2
    python -m agent_harness.run_goal_tests --experiment EXP-1a2b3c4d5e6f --report report.txt
    python -m agent_harness.run_goal_tests --list
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from agent_harness.clients.agent_client import HttpAgentClient
from agent_harness.clients.content_source import FileContentSource
from agent_harness.clients.llm_provider import LLMProvider
from agent_harness.config import settings
from agent_harness.conversation.intent_detector import IntentDetector
from agent_harness.errors import ExperimentNotFoundError
from agent_harness.experiments.experiment_service import ExperimentService
from agent_harness.experiments.variant_service import VariantService
from agent_harness.runner.goal_test_runner import GoalTestRunner
from agent_harness.runner.orchestrator import TestOrchestrator, format_report
from agent_harness.scenarios.goal_tests import get_goal_test, list_goal_tests
from agent_harness.storage.database import HarnessDatabase

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run goal-oriented conversation tests against the scheduling agent."
    )
    parser.add_argument(
        "--endpoint",
        type=str,
        default=None,
        help="Agent prediction endpoint URL (default: AGENT_ENDPOINT_URL).",
    )
    parser.add_argument(
        "--tests",
        nargs="+",
        default=None,
        help="Test IDs to run (default: all built-in tests).",
    )
    parser.add_argument(
        "--category",
        type=str,
        default="",
        help="Only run tests in this category (happy-path, edge-case, error-handling).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of parallel workers (default: WORKER_CONCURRENCY).",
    )
    parser.add_argument(
        "--experiment",
        type=str,
        default=None,
        help="Run the tests as part of this running A/B experiment.",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the results database (default: HARNESS_DB_PATH).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        help="Path to write the run report (default: stdout).",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List the available tests and exit.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging output.",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list:
        for test in list_goal_tests(args.category):
            sys.stdout.write(f"{test.id:<16} {test.category:<15} {test.name}\n")
        return

    try:
        tests = (
            [get_goal_test(t) for t in args.tests] if args.tests
            else list_goal_tests(args.category)
        )
    except KeyError as e:
        logger.error("%s", e.args[0])
        sys.exit(1)
    if not tests:
        logger.error("No tests selected")
        sys.exit(1)

    database = HarnessDatabase(args.db)
    agent_config = replace(settings.agent, url=args.endpoint) if args.endpoint else settings.agent
    provider = LLMProvider()
    detector = IntentDetector(provider)

    experiments = None
    if args.experiment:
        variants = VariantService(database, FileContentSource())
        experiments = ExperimentService(database, variants)
        try:
            experiment = experiments.get_experiment(args.experiment)
        except ExperimentNotFoundError as e:
            logger.error("%s", e)
            sys.exit(1)
        logger.info("Experiment %s '%s' (%s)", experiment.experiment_id, experiment.name,
                    experiment.status.value)

    def runner_factory(session_id: str) -> GoalTestRunner:
        return GoalTestRunner(
            HttpAgentClient(session_id, agent_config),
            detector,
            database,
            llm_provider=provider,
            experiment_service=experiments,
        )

    try:
        orchestrator = TestOrchestrator(runner_factory, database, args.concurrency)
    except ValueError as e:
        logger.error("%s", e)
        sys.exit(1)

    logger.info("Running %d test(s) against %s", len(tests), agent_config.url)
    summary = asyncio.run(orchestrator.run(tests, experiment_id=args.experiment))
    output = format_report(summary)

    if args.report:
        report_path = Path(args.report)
        report_path.write_text(output, encoding="utf-8")
        logger.info("Report written to %s", report_path)
    else:
        sys.stdout.write(output + "\n")

    sys.exit(0 if summary.passed == summary.total else 1)


if __name__ == "__main__":
    main()
