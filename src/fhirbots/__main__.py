"""Command line entry point.

Usage:
    python -m fhirbots list
    python -m fhirbots run lab-risk report.json
    python -m fhirbots run eligibility request.json --secret OPKIT_API_KEY=sk_test
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .bots.schemas import BotEvent
from .config import get_config
from .medplum import get_fhir_client
from .registry import BOT_REGISTRY, execute_bot


def _parse_secrets(pairs: list[str]) -> dict[str, str]:
    secrets = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"Secret must be NAME=VALUE, got: {pair}")
        secrets[name] = value
    return secrets


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fhirbots", description="Run FHIR automation bots")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List registered bots")

    run = subparsers.add_parser("run", help="Run a bot with a JSON input file")
    run.add_argument("bot", help="Bot name (see 'list')")
    run.add_argument("input", type=Path, help="JSON file with the triggering resource")
    run.add_argument(
        "--secret",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Secret passed to the bot (repeatable)",
    )
    run.add_argument(
        "--content-type",
        default="application/fhir+json",
        help="Content type of the input",
    )
    return parser


async def run_bot(bot: str, input_path: Path, secrets: dict[str, str], content_type: str) -> int:
    if not BOT_REGISTRY.get(bot):
        print(f"Unknown bot: {bot}", file=sys.stderr)
        return 2

    event = BotEvent(
        input=json.loads(input_path.read_text(encoding="utf-8")),
        content_type=content_type,
        secrets=secrets,
    )
    result = await execute_bot(bot, get_fhir_client(), event)
    print(json.dumps(result, indent=2, default=str))
    return 1 if isinstance(result, dict) and result.get("bot") == bot and "error" in result else 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "list":
        for name in BOT_REGISTRY.names:
            bot = BOT_REGISTRY.get(name)
            print(f"- {bot.name} ({bot.trigger}): {bot.description}")
        return 0

    try:
        secrets = _parse_secrets(args.secret)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    return asyncio.run(run_bot(args.bot, args.input, secrets, args.content_type))


if __name__ == "__main__":
    sys.exit(main())
