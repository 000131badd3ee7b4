import asyncio
import logging
import signal
import sys
import time
import httpx
import uvicorn

from .config import settings
from .dispatch import TaskDispatcher
from .mirror import MirrorSelector
from .models import SyncReport
from .orchestrator import SyncOrchestrator
from .preferences import load_auto_sync, load_interval
from .state import HistoryStore, SettingsStore, StateManager
from .updates import UpdateChecker
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")


class SyncService:
    def __init__(self):
        self.running = True
        self.state_manager = StateManager(settings.STATE_PATH, persist=settings.PERSIST_ENABLED)
        self.history_store = HistoryStore(settings.HISTORY_PATH, persist=settings.PERSIST_ENABLED)
        self.settings_store = SettingsStore(settings.SETTINGS_PATH, persist=settings.PERSIST_ENABLED)
        self.client = httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS, follow_redirects=True)
        self.dispatcher = TaskDispatcher()
        self.orchestrator = SyncOrchestrator(
            self.history_store, self.settings_store, self.client, self.dispatcher
        )
        self.mirror = MirrorSelector(
            settings.MIRROR_PRIMARY_URL,
            settings.MIRROR_ALTERNATE_URL,
            probe_timeout=settings.MIRROR_PROBE_TIMEOUT_SECONDS,
            cache_seconds=settings.MIRROR_CACHE_SECONDS,
        )
        self.updates = UpdateChecker(
            self.mirror, self.client, settings.DOWNLOAD_DIR, self.dispatcher,
            dev=settings.RELEASE_CHANNEL_DEV, name=settings.RELEASE_NAME,
            max_retries=settings.FETCH_MAX_RETRIES, retry_delay=settings.FETCH_RETRY_DELAY_SECONDS,
        )

        # Link service objects to server module
        server.state_manager = self.state_manager
        server.orchestrator = self.orchestrator

    def record_report(self, report: SyncReport):
        self.state_manager.record(report)
        level = logging.INFO if report.success else logging.WARNING
        logger.log(level, f"{report.kind} sync finished: {report.outcome.value} - {report.message}")

    def refresh_schedule(self):
        """Schedule settings live in the settings store, so edits apply on the next loop."""
        s = self.state_manager.state
        s.auto_sync = load_auto_sync(self.settings_store)
        s.interval_minutes = int(load_interval(self.settings_store))

    async def sync_loop(self):
        first = True
        while self.running:
            start_time = time.time()
            try:
                self.refresh_schedule()
                s = self.state_manager.state
                due = s.auto_sync and start_time - s.last_history_sync >= s.interval_minutes * 60
                if not ((first and settings.SYNC_ON_START) or due):
                    logger.debug("No sync due.")
                elif not self.orchestrator.is_configured():
                    logger.debug("Sync not configured, skipping.")
                else:
                    await self.orchestrator.sync_all(callback=self.record_report)
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            first = False
            # Re-check at least every minute so interval edits take effect
            await asyncio.sleep(60)

    async def check_for_update(self):
        release = await self.updates.fetch_manifest()
        if release:
            logger.info(f"Latest release: {release.name} ({release.code})")
            if settings.UPDATE_AUTO_DOWNLOAD:
                download = await self.updates.package_download(release)
                result = await download.run()
                if result.success:
                    logger.info(f"Release package saved to {result.path}")

    async def start(self):
        tasks = [asyncio.create_task(self.sync_loop())]
        if settings.UPDATE_CHECK_ENABLED:
            tasks.append(asyncio.create_task(self.check_for_update()))

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.dispatcher.drain()
            await self.client.aclose()
            self.state_manager.save()


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
