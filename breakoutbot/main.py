"""Breakout bot — application entry point.

Boots the FastAPI internal server alongside the trading engine and
provides the ``breakoutbot`` CLI.
"""

import logging
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI

from breakoutbot.api.routers import router

app = FastAPI(title="Breakout Bot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("breakoutbot")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@app.get("/health")
async def health():
    """Liveness probe for the process supervisor."""
    return {"status": "ok"}


def configure_logging(level: str = "INFO", log_file: str = "") -> None:
    """Configure root logging once at process start.

    Adds a size-rotated file handler when *log_file* is set.
    """
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)
    if log_file:
        handler = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=5)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def warn_if_live(environment: str) -> bool:
    """Log a prominent warning when trading a live account.

    Returns ``True`` if *environment* is ``"live"``.
    """
    if environment == "live":
        logger.warning("LIVE TRADING ACCOUNT — real money at risk!")
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def run_cli() -> None:
    """Parse CLI arguments, wire the components and run until stopped."""
    import argparse
    import asyncio
    import signal
    import sys

    from breakoutbot.api.routers import configure_routers
    from breakoutbot.broker.oanda_client import OandaClient
    from breakoutbot.config import load_config
    from breakoutbot.engine import BreakoutEngine
    from breakoutbot.lifecycle import PositionManager
    from breakoutbot.notify.telegram import TelegramNotifier
    from breakoutbot.repos.db import init_db
    from breakoutbot.repos.state_repo import StateStore
    from breakoutbot.repos.trade_repo import TradeRepo
    from breakoutbot.risk.daily_limits import DailyLossGuard

    parser = argparse.ArgumentParser(description="Single-instrument breakout trading bot")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Run the trading engine without the internal API server",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT)
    try:
        config = load_config(args.env_file)
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(config.log_level.upper())
    configure_logging(config.log_level, config.log_file)

    warn_if_live(config.oanda_environment)

    init_db(config.db_path)
    store = StateStore(config.db_path)
    store.load()
    trade_repo = TradeRepo(config.db_path)

    broker = OandaClient(config)
    notifier = TelegramNotifier(config)
    manager = PositionManager(
        config=config,
        broker=broker,
        store=store,
        notifier=notifier,
        trade_repo=trade_repo,
        daily_guard=DailyLossGuard(config.max_daily_loss),
    )
    manager.restore_daily_totals()
    engine = BreakoutEngine(config, broker, store, manager, notifier)

    configure_routers(trade_repo=trade_repo, state_store=store, broker=broker)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        engine.stop()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    if args.no_api:
        asyncio.run(engine.run())
    else:
        asyncio.run(_run_with_api(engine, config.health_port))


async def _run_with_api(engine, port: int = 8080) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        # uvicorn installs its own signal handlers; stopping it stops the engine
        await server.serve()
        engine.stop()

    async def _run_engine():
        await engine.run()
        server.should_exit = True

    logger.info("Internal API available at http://localhost:%d", port)
    results = await asyncio.gather(
        _run_server(),
        _run_engine(),
        return_exceptions=True,
    )
    logger.info("Breakout bot stopped. Results: %s", results)


if __name__ == "__main__":
    run_cli()
