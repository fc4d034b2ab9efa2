"""Batch runner entrypoint: `python -m src.cli "long btc 20x" "swap 100 usdc to eth"`.

Prints one JSON result per input line, in input order.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from src.app import create_app
from src.config.logging import configure_logging
from src.config.settings import load_settings
from src.execution.coordinator import PENDING_CONFIRMATION
from src.execution.result import IntentExecutionResult

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run free-text trading intents through the pipeline.")
    parser.add_argument("texts", nargs="*", help="Intent texts. Reads stdin lines when omitted.")
    parser.add_argument("--parallel", action="store_true", help="Run all intents concurrently.")
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds to wait between sequential intents.",
    )
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Stop after routing and print the plan without executing.",
    )
    parser.add_argument("--chain", default=None, help="Preferred chain (overrides inference).")
    parser.add_argument("--session", default="cli", help="Session id used for path policy.")
    return parser


def _read_texts(args: argparse.Namespace) -> list[str]:
    if args.texts:
        return list(args.texts)
    return [line.strip() for line in sys.stdin if line.strip()]


def render(result: IntentExecutionResult) -> str:
    return result.model_dump_json(exclude_none=True)


async def run(argv: Sequence[str] | None = None) -> int:
    """Run the batch described by `argv`; returns the process exit code."""

    args = build_parser().parse_args(argv)
    if args.delay < 0:
        raise SystemExit("--delay must not be negative")

    settings = load_settings()
    configure_logging(settings.log_level)

    texts = _read_texts(args)
    if not texts:
        logger.warning("no intents given")
        return 0

    app = create_app(settings)
    await app.start()
    try:
        results = await app.coordinator.run_batch(
            texts,
            parallel=args.parallel,
            delay_s=args.delay,
            session_id=args.session,
            preferred_chain=args.chain,
            plan_only=args.plan_only,
            metadata={"source": "cli"},
        )
    finally:
        logger.info("shutting down")
        await app.stop()

    for result in results:
        print(render(result))
    return 0 if all(r.ok or r.status == PENDING_CONFIRMATION for r in results) else 1


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
