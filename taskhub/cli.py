"""Command-line interface: run the server, inspect and maintain the queues."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


async def _with_runtime(config_path: Optional[Path], action: str, grace_seconds: Optional[float] = None) -> dict:
    """Build a runtime without starting workers and run one maintenance action."""
    import taskhub
    from taskhub.common.logging_config import setup_logging
    from taskhub.runtime import create_runtime

    config = taskhub.load_config(config_path)
    setup_logging(config.logging, config.config_dir)
    runtime = await create_runtime(config)
    try:
        if action == "stats":
            return await runtime.get_stats()
        if action == "clean":
            return await runtime.clean(grace_seconds)
        if action == "drain":
            await runtime.ai_client.open()
            return {
                "tasks": await runtime.tasks.drain("cli-drain"),
                "notifications": await runtime.notifications.drain("cli-drain"),
            }
        raise ValueError(f"Unknown action: {action}")
    finally:
        await runtime.close()


def show_config(config_path: Optional[Path], show_secrets: bool) -> None:
    """Print the non-default settings of the loaded configuration."""
    import taskhub

    try:
        config = taskhub.load_config(config_path)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(config.to_yaml_string(exclude_secrets=not show_secrets), end="")


def serve(host: Optional[str], port: Optional[int], config_path: Optional[Path]) -> None:
    """Run the HTTP API with its worker pools."""
    from taskhub.web.main import run

    run(host=host, port=port, config_path=config_path)


def main() -> None:
    """Main entry point for the taskhub command."""
    parser = argparse.ArgumentParser(
        prog="taskhub",
        description="TaskHub asynchronous AI task queue",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config.yaml (default: TASKHUB_CONFIG_DIR, then working directory)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API and workers",
        description="Start the FastAPI server together with the task and notification workers",
    )
    serve_parser.add_argument("--host", help="Bind address (default: TASKHUB_API_HOST or 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: TASKHUB_API_PORT or 8000)")

    subparsers.add_parser(
        "stats",
        help="Show job counts per state",
        description="Print job counts for the task and notification queues as JSON",
    )

    clean_parser = subparsers.add_parser(
        "clean",
        help="Purge finished jobs",
        description="Purge completed and failed jobs past their retention window",
    )
    clean_parser.add_argument(
        "--grace",
        type=float,
        help="Purge every finished job older than this many seconds instead of using retention settings",
    )

    config_parser = subparsers.add_parser(
        "config",
        help="Show the effective configuration",
        description="Print the settings that differ from the defaults as YAML",
    )
    config_parser.add_argument(
        "--show-secrets",
        action="store_true",
        help="Include the AI API key in the output",
    )

    subparsers.add_parser(
        "drain",
        help="Process waiting jobs once and exit",
        description="Run every currently eligible job in the foreground, then exit",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        serve(args.host, args.port, args.config)
        sys.exit(0)

    if args.command == "config":
        show_config(args.config, args.show_secrets)
        sys.exit(0)

    try:
        result = asyncio.run(_with_runtime(args.config, args.command, getattr(args, "grace", None)))
    except Exception as e:
        logger.error("cli_command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result, indent=2))
    sys.exit(0)


if __name__ == "__main__":
    main()
