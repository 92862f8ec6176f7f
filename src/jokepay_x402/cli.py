"""
Command-line entry points: run the paywall server or the paying agent.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Sequence

from .agent import AgentError, PaymentAgent, format_report
from .authorizer import AuthorizerError, build_authorizer
from .config import AgentConfig, ConfigError, ServerConfig, load_env_file


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jokepay",
        description="Pay-per-request joke API over the x402 challenge protocol",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Python logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the paid joke API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None, help="Override PORT")

    agent = sub.add_parser("agent", help="Request a joke, paying when challenged")
    agent.add_argument("prompt", nargs="*", help="Memo passed to the authorizer")
    agent.add_argument("--url", default=None, help="Override JOKE_API_URL")
    agent.add_argument("--json", action="store_true", help="Print the raw result as JSON")
    return parser


def _run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .http import create_app

    config = ServerConfig.from_env()
    port = args.port or config.port
    uvicorn.run(create_app(config), host=args.host, port=port)
    return 0


async def _run_agent_async(args: argparse.Namespace) -> int:
    config = AgentConfig.from_env()
    authorizer = build_authorizer(config)
    memo = " ".join(args.prompt) or "tell me a joke"
    agent = PaymentAgent(args.url or config.api_url, authorizer, timeout=config.timeout, memo=memo)
    try:
        result = await agent.run()
    except AgentError as exc:
        logging.error("Agent failed: %s", exc)
        if exc.body is not None:
            print(json.dumps(exc.body, indent=2, default=str))
        return 1
    except AuthorizerError as exc:
        logging.error("Authorizer failed: %s", exc)
        return 1
    finally:
        await agent.aclose()

    if args.json:
        print(json.dumps({"joke": result.joke, "audit": result.audit, "paid": result.paid}, indent=2))
    else:
        print(format_report(result))
    return 0


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_env_file(Path(args.env_file) if args.env_file else None)
    _configure_logging(args.log_level)

    try:
        if args.command == "serve":
            return _run_serve(args)
        return asyncio.run(_run_agent_async(args))
    except (ConfigError, AuthorizerError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
