"""
Main entry point for the Shelf Sync Service.

Runs the sync engine on its own event loop thread, schedules the periodic
stale shelf check and serves the control API.
"""

import asyncio
import atexit
import inspect
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask, request

from shelfsync.auth import AuthState, AuthStateSource
from shelfsync.config import SyncConfig, get_config_from_env
from shelfsync.db.database import close_db, init_db
from shelfsync.sync.engine import SyncEngine, create_sync_engine
from shelfsync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


class EngineRunner:
    """
    Owns the event loop the engine lives on.

    Flask handlers run in waitress worker threads; they reach the engine
    only through ``call``, which executes on the loop thread.
    """

    def __init__(self, config: SyncConfig):
        self.config = config
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run_loop, name="sync-engine", daemon=True)
        initial = AuthState.AUTHENTICATED if config.is_configured() else AuthState.UNAUTHENTICATED
        self.auth = AuthStateSource(initial)
        self.engine: Optional[SyncEngine] = None
        self.scheduler: Optional[AsyncIOScheduler] = None

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def call(self, operation: Callable[[Optional[SyncEngine]], Any], timeout: Optional[float] = None) -> Any:
        """
        Run ``operation(engine)`` on the loop thread and return its result.

        Coroutines returned by the operation are awaited there as well.
        """
        async def invoke():
            result = operation(self.engine)
            if inspect.isawaitable(result):
                result = await result
            return result

        return asyncio.run_coroutine_threadsafe(invoke(), self.loop).result(timeout)

    def start(self) -> None:
        self.thread.start()
        self.call(lambda engine: self._start())

    async def _start(self) -> None:
        self.engine = create_sync_engine(self.config, self.auth)
        if self.engine is None:
            return

        self.scheduler = AsyncIOScheduler(event_loop=self.loop)
        self.scheduler.add_job(
            self.check_stale_shelves,
            trigger=IntervalTrigger(minutes=self.config.stale_check_interval_minutes),
            id='stale_check',
            name='Stale shelf check',
            replace_existing=True,
        )
        self.scheduler.add_job(self.engine.initialize, trigger='date', id='initial_load')
        self.scheduler.start()
        logger.info(
            "Scheduler started",
            stale_check_minutes=self.config.stale_check_interval_minutes,
        )

    async def check_stale_shelves(self) -> None:
        """Refresh stale shelves."""
        if self.engine is None:
            return
        try:
            await self.engine.refresh_stale_shelves()
        except Exception as e:
            logger.exception("Stale shelf check failed", error=str(e))

    async def _stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown")
        if self.engine is not None:
            self.engine.dispose()

    def shutdown(self) -> None:
        """Stop the scheduler, dispose the engine and stop the loop."""
        if not self.thread.is_alive():
            return
        try:
            self.call(lambda engine: self._stop(), timeout=10)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self.thread.join(timeout=10)


def create_app(runner: EngineRunner) -> Flask:
    """
    Create and configure the Flask application.

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    app.secret_key = runner.config.secret_key
    app.extensions['shelfsync'] = runner

    from shelfsync.web.routes.api import api_bp
    app.register_blueprint(api_bp)

    @app.route('/health')
    def health():
        status = {
            'status': 'ok',
            'engine': runner.engine is not None,
            'auth': runner.auth.state.value,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        if request.args.get('check') and runner.engine is not None:
            status['openlibrary'] = runner.call(lambda engine: engine.check_connection(), timeout=30)
        return status

    return app


def main():
    """Main entry point."""
    config = get_config_from_env()
    setup_logging(config.log_level, json_logs=config.log_json)

    init_db(config.database_url)

    logger.info(
        "Starting Shelf Sync Service",
        version="0.1.0",
        openlibrary_url=config.openlibrary_url,
        configured=config.is_configured(),
    )

    runner = EngineRunner(config)
    runner.start()
    if runner.engine is None:
        logger.warning("No Open Library session configured; serving API without an engine")

    app = create_app(runner)

    atexit.register(close_db)
    atexit.register(runner.shutdown)

    from waitress import serve
    serve(app, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
