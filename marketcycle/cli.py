#!/usr/bin/env python3
"""
MarketCycle CLI — Operator tools for the market cycle orchestrator.

Usage:
    python -m marketcycle.cli run                       # headless orchestrator
    python -m marketcycle.cli status                    # current cycle as JSON
    python -m marketcycle.cli deploy <entity_id> [--genesis]

Command results (and error envelopes) are printed to stdout as JSON; logs go
to stderr.

A manual deployment goes through the same coordinator and state machine as
a scheduled one: it takes the per-entity lock, and while no cycle exists it
starts the first one.
"""

import argparse
import asyncio
import json
import signal
import sys

import structlog

from marketcycle.bootstrap import CycleServices, build_services
from marketcycle.config import CycleSettings, get_settings
from marketcycle.errors import MarketCycleError
from marketcycle.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_orchestrator(services: CycleServices) -> None:
    """Run the scheduler until SIGINT / SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(services.orchestrator.stop()))
        except NotImplementedError:
            pass

    await services.feed.setup()
    await services.chain.setup()
    try:
        await services.orchestrator.run()
    finally:
        await services.close()


async def cycle_status(services: CycleServices) -> dict:
    try:
        cycle, status = await services.state_machine.current()
        return {
            "status": status.value,
            "cycle": cycle.model_dump(mode="json") if cycle else None,
        }
    finally:
        await services.close()


async def deploy_entity(services: CycleServices, entity_id: int, genesis: bool = False) -> dict:
    try:
        outcome = await services.coordinator.deploy_market(entity_id, is_genesis=genesis)
        cycle = await services.state_machine.record_deployment(outcome)
        return {"deployment": outcome.model_dump(mode="json"), "cycle_id": cycle.id}
    finally:
        await services.close()


def _services(settings: CycleSettings) -> CycleServices:
    setup_logging(settings.log_level, json_output=settings.json_logs)
    return build_services(settings)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="MarketCycle CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the cycle orchestrator without the HTTP server")
    subparsers.add_parser("status", help="Print the current cycle and its status")

    deploy_parser = subparsers.add_parser("deploy", help="Deploy the market for one entity")
    deploy_parser.add_argument("entity_id", type=int, help="Ranking feed entity id")
    deploy_parser.add_argument(
        "--genesis",
        action="store_true",
        help="Use the genesis expiry window instead of the current cycle's expiry",
    )

    args = parser.parse_args(argv)
    settings = get_settings()

    try:
        if args.command == "run":
            asyncio.run(run_orchestrator(_services(settings)))
            return 0
        if args.command == "status":
            result = asyncio.run(cycle_status(_services(settings)))
        else:
            result = asyncio.run(
                deploy_entity(_services(settings), args.entity_id, args.genesis)
            )
    except MarketCycleError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2))
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
