"""
Polygon Net-Flow Indexer: Main Entrypoint.

Single-process asyncio runner with two concurrent tasks:
    1. TransferIndexer  : backfill, then poll Transfer logs for tracked tokens
    2. Read API         : uvicorn serving net flows and recent transfers

The indexer is the only writer; the API only reads committed snapshots.

Usage:
    python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sqlite3
import sys

import uvicorn
from dotenv import load_dotenv

from indexer_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(
    rpc_url: str,
    db_path: str,
    confirmations: int,
    tokens: list[str],
    watched: list[str],
    api_host: str,
    api_port: int,
) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Polygon Net-Flow Indexer starting")
    _logger.info("=" * 60)
    _logger.info(
        "  rpc             : %s...%s", rpc_url[:25], rpc_url[-6:] if len(rpc_url) > 31 else ""
    )
    _logger.info("  database        : %s", db_path)
    _logger.info("  confirmations   : %d", confirmations)
    _logger.info("  tokens          : %s", ", ".join(tokens) or "(none)")
    _logger.info("  watched         : %d addresses", len(watched))
    _logger.info("  api             : http://%s:%d", api_host, api_port)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback: detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when a core task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
    else:
        _logger.info("Task %s exited", task.get_name())
    shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and launch the indexer and the read API."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()
    get_config().clear_cache()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    create_module_log_directories()

    cfg = get_config()
    app_cfg = cfg.get_app_config()
    chain_cfg = cfg.get_chain_config()

    api_host: str = app_cfg["api"]["host"]
    api_port: int = int(app_cfg["api"]["port"])
    db_path = cfg.get_db_path()
    watched_cfg = chain_cfg.get("watched_addresses", [])

    _log_banner(
        chain_cfg["rpc"]["http_url"],
        db_path,
        int(chain_cfg["confirmations"]),
        [t.get("symbol") or t["address"] for t in chain_cfg.get("tokens", [])],
        [w["address"] for w in watched_cfg],
        api_host,
        api_port,
    )

    # ------------------------------------------------------------------
    # 2. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    from api.read_api import create_app
    from chain.rpc_client import RpcClient
    from core.aggregator import NetFlowAggregator
    from core.indexer import TransferIndexer
    from storage.transfer_store import TransferStore

    try:
        store = TransferStore(db_path)
        await store.upsert_watched_labels(
            {w["address"]: w.get("label", "") for w in watched_cfg}
        )
    except (sqlite3.Error, OSError) as exc:
        _logger.critical("Cannot open database at %s: %s", db_path, exc)
        sys.exit(1)

    rpc_client = RpcClient()
    aggregator = NetFlowAggregator(store)
    indexer = TransferIndexer(rpc_client, store, aggregator)

    app = create_app(store, indexer)
    server = uvicorn.Server(
        uvicorn.Config(app, host=api_host, port=api_port, log_level="info")
    )

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Launch concurrent tasks
    # ------------------------------------------------------------------
    task_indexer = asyncio.create_task(indexer.run(), name="indexer")
    task_api = asyncio.create_task(server.serve(), name="read_api")

    tasks = [task_indexer, task_api]

    for t in tasks:
        t.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("All tasks launched: indexer, read_api")

    # ------------------------------------------------------------------
    # 5. Wait for shutdown signal, then cancel tasks
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, cancelling tasks")

        # Signal cooperative stop
        indexer.stop()
        server.should_exit = True

        # The API exits on its own once should_exit is seen; the indexer may be sleeping
        if not task_indexer.done():
            task_indexer.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for t, result in zip(tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", t.get_name(), result)

        # Cleanup resources
        await rpc_client.close()
        await store.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
