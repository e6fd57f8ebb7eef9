from __future__ import annotations
import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime

from dotenv import load_dotenv

from market_drivers.core.config import load_contracts
from market_drivers.core.errors import AllSourcesFailed, InvalidConfiguration, UnknownViewError
from market_drivers.engines.session_clock import SessionClock

LOG_LEVEL_ENV_VAR = "MARKET_DRIVERS_LOG_LEVEL"


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv(LOG_LEVEL_ENV_VAR, "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


async def _fetch_view(contracts, kind: str, refresh: bool):
    from market_drivers.engines.orchestrator import AggregationOrchestrator
    from market_drivers.integrations import YahooQuoteProvider
    from market_drivers.integrations.weather import WeatherProvider

    provider = YahooQuoteProvider(contracts)
    weather = WeatherProvider()
    try:
        orchestrator = AggregationOrchestrator(contracts, provider, weather=weather)
        return await orchestrator.get_aggregated_view(kind, force_refresh=refresh)
    finally:
        await provider.close()
        await weather.close()


def main(argv=None):
    load_dotenv()

    p = argparse.ArgumentParser("market-drivers")
    p.add_argument("--contracts", default=None, help="Contracts directory (default: packaged contracts)")
    p.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    # session - current and next session
    s_session = sub.add_parser("session", help="Show the current and next trading session")
    s_session.add_argument("--at", default=None, help="ISO timestamp to resolve instead of now")

    # view - one aggregated view
    s_view = sub.add_parser("view", help="Fetch an aggregated view")
    s_view.add_argument("--kind", default="command-center")
    s_view.add_argument("--refresh", action="store_true", help="Bypass the cache")

    # validate-config
    sub.add_parser("validate-config", help="Load and validate all contracts")

    # serve - API server
    s_serve = sub.add_parser("serve", help="Run the HTTP API")
    s_serve.add_argument("--host", default="0.0.0.0")
    s_serve.add_argument("--port", type=int, default=8000)

    args = p.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        contracts = load_contracts(args.contracts)
    except InvalidConfiguration as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.cmd == "validate-config":
        print(json.dumps({"status": "ok", "contracts": str(contracts.root), "config_hash": contracts.config_hash}, indent=2))
        return 0

    if args.cmd == "session":
        clock = SessionClock.from_contracts(contracts)
        now = datetime.fromisoformat(args.at) if args.at else None
        print(json.dumps({
            "current": clock.resolve_session(now).to_payload(),
            "next": clock.resolve_next_session(now).to_payload(),
        }, indent=2))
        return 0

    if args.cmd == "view":
        try:
            view = asyncio.run(_fetch_view(contracts, args.kind, args.refresh))
        except UnknownViewError as e:
            print(str(e), file=sys.stderr)
            return 2
        except AllSourcesFailed as e:
            print(f"{e} (retryable)", file=sys.stderr)
            return 1
        print(json.dumps(view.to_payload(), indent=2, default=str))
        return 0

    if args.cmd == "serve":
        import uvicorn
        from market_drivers.api.main import create_app

        uvicorn.run(create_app(contracts=contracts), host=args.host, port=args.port)
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
