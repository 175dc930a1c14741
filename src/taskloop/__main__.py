"""CLI entry point for taskloop."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from taskloop.app import AgentApp
from taskloop.config import AppConfig, load_config
from taskloop.errors import ConfigurationError
from taskloop.log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="Tool-using task agent runtime",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def _add_config_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    ask_parser = subparsers.add_parser("ask", help="Run the agent once and print the answer")
    _add_config_args(ask_parser)
    ask_parser.add_argument("input", help="Task or question for the agent")
    ask_parser.add_argument("-o", "--owner", default="default", help="Owner id")
    ask_parser.add_argument("-s", "--session", default=None, help="Session id to continue")
    ask_parser.add_argument("-k", "--idempotency-key", default=None, help="Idempotency key")
    ask_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")

    stats_parser = subparsers.add_parser("stats", help="Show run analytics for an owner")
    _add_config_args(stats_parser)
    stats_parser.add_argument("-o", "--owner", default="default", help="Owner id")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "ask":
        _ask(args)
    elif args.command == "stats":
        _stats(args.config, args.env, args.owner)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml first", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Backend       : {config.gateway.backend} ({config.gateway.model})")
    print(f"  Max iterations: {config.agent.max_iterations}")
    print(f"  Storage       : {config.storage.db_path}")
    print(f"  Tools         : {', '.join(config.tools.enabled) or '(none)'}")
    print(f"  Embeddings    : {'on' if config.embeddings.enabled and config.embeddings.api_key else 'off'}")
    print(f"  Fact cap      : {config.memory.max_facts_per_owner} per owner")
    breaker = config.resilience.model_breaker
    print(
        f"  Breaker       : window={breaker.window_size} "
        f"threshold={breaker.failure_rate_threshold:.0%} cooldown={breaker.cooldown_seconds:.0f}s"
    )


def _ask(args: argparse.Namespace) -> None:
    config = _load(args.config, args.env)
    setup_logging(config.log_level, json_output=config.log_json)

    async def _async_main() -> None:
        try:
            app = AgentApp(config)
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(1)
        async with app:
            result = await app.run(
                args.owner,
                args.input,
                session_id=args.session,
                idempotency_key=args.idempotency_key,
            )
            # let extraction and the trace write finish before shutdown
            await app.dispatcher.join()
        if args.json:
            print(result.model_dump_json(indent=2))
        else:
            print(result.answer)
            print(f"\n[session {result.session_id} | {result.iterations_used} iteration(s) | {result.status}]")

    asyncio.run(_async_main())


def _stats(config_path: str, env_path: str, owner_id: str) -> None:
    config = _load(config_path, env_path)
    setup_logging(config.log_level, json_output=config.log_json)

    async def _async_main() -> None:
        from taskloop.storage.database import Database
        from taskloop.storage.trace_repo import TraceRepository

        db = Database(config.storage.db_path)
        await db.initialize()
        try:
            analytics = await TraceRepository(db).analytics(owner_id)
        finally:
            await db.close()
        print(json.dumps(analytics, indent=2))

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
