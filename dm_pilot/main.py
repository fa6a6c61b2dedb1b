"""
Main orchestrator for DM Pilot.

This module wires all components together and runs the HTTP server next to
the background worker.

Responsibilities:
    1. Validate configuration and build the store (Supabase or SQLite)
    2. Build the platform client, generation client and alert channel
    3. Wire the webhook processor, sync pipeline, token manager and
       dead letter processor
    4. Serve webhooks (uvicorn) and run the background loops
    5. Shut everything down cleanly when the server exits

Entry Point:
    python -m dm_pilot.main
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import uvicorn

from config import get_settings
from config.settings import Settings
from dm_pilot import __version__
from dm_pilot.ai_client import AIClient
from dm_pilot.alerts import AlertManager, TelegramNotifier, initialize_alerts
from dm_pilot.api import create_app
from dm_pilot.dead_letter import DeadLetterProcessor
from dm_pilot.graph_client import GraphClient
from dm_pilot.hrn import HRNClassifier
from dm_pilot.instagram import InstagramAPI
from dm_pilot.matching import TriggerMatcher
from dm_pilot.personalization import PromptPersonalizer
from dm_pilot.reply import ReplyGenerator
from dm_pilot.sync import ContactSyncPipeline
from dm_pilot.token_cipher import TokenCipher
from dm_pilot.token_manager import TokenManager
from dm_pilot.webhook_processor import WebhookProcessor
from dm_pilot.worker import BackgroundWorker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
# Suppress noisy HTTP logs
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


class DMPilot:
    """
    Main orchestrator that ties all components together.

    This class handles:
    - Component initialization
    - HTTP server and background worker lifecycle
    - Graceful shutdown
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

        self.db = None
        self.graph: Optional[GraphClient] = None
        self.instagram: Optional[InstagramAPI] = None
        self.ai: Optional[AIClient] = None
        self.telegram: Optional[TelegramNotifier] = None
        self.alerts: Optional[AlertManager] = None
        self.processor: Optional[WebhookProcessor] = None
        self.worker: Optional[BackgroundWorker] = None
        self.server: Optional[uvicorn.Server] = None

    def _validate_config(self) -> None:
        """
        Validate configuration that the server cannot run without.

        Raises:
            ValueError: If required configuration is missing.
        """
        missing = []
        if not self.settings.instagram_verify_token:
            missing.append("INSTAGRAM_VERIFY_TOKEN")
        if self.settings.webhook_signature_required and not self.settings.instagram_app_secret:
            missing.append("INSTAGRAM_APP_SECRET")
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        logger.info("Configuration validation passed")

    async def _init_database(self, cipher: TokenCipher):
        """Supabase when configured and healthy, SQLite otherwise."""
        if self.settings.supabase_enabled:
            try:
                from dm_pilot.database import Database
                db = Database(self.settings.supabase_url, self.settings.supabase_key, cipher=cipher)
                if not await db.health_check():
                    raise Exception("Supabase health check failed")
                logger.info("Database initialized (Supabase)")
                return db
            except Exception as e:
                logger.warning(f"Supabase unavailable ({e}), falling back to SQLite")

        from dm_pilot.database_sqlite import SQLiteDatabase
        db = SQLiteDatabase(self.settings.sqlite_path, cipher=cipher)
        logger.info("Database initialized (SQLite)")
        return db

    async def initialize(self) -> bool:
        """
        Initialize all components.

        Returns:
            True if all components initialized successfully, False otherwise.
        """
        s = self.settings
        logger.info("Initializing components...")

        try:
            # 0. Validate configuration first (fail fast)
            self._validate_config()
            cipher = TokenCipher(s.token_encryption_key)

            # 1. Store
            self.db = await self._init_database(cipher)

            # 2. Alerts
            if s.telegram_enabled:
                self.telegram = TelegramNotifier(s.telegram_bot_token, s.telegram_chat_id)
                await self.telegram.start()
            self.alerts = initialize_alerts(
                telegram=self.telegram,
                min_telegram_level=s.min_telegram_alert_level,
            )

            # 3. External clients
            self.graph = GraphClient(
                base_url=s.instagram_graph_url,
                api_version=s.instagram_api_version,
                timeout=s.request_timeout_seconds,
                max_retries=s.request_max_retries,
            )
            self.instagram = InstagramAPI(self.graph)
            self.ai = AIClient(
                base_url=s.ai_base_url,
                api_key=s.ai_api_key,
                model=s.ai_model,
                fallback_models=s.ai_fallback_models,
            )

            # 4. Inbound path
            personalizer = PromptPersonalizer(self.db)
            self.processor = WebhookProcessor(
                db=self.db,
                instagram=self.instagram,
                classifier=HRNClassifier(self.ai),
                matcher=TriggerMatcher(self.db),
                reply_generator=ReplyGenerator(self.db, self.ai, self.instagram, personalizer),
                ai_client=self.ai,
                alerts=self.alerts,
                dedup_window_seconds=s.dedup_window_seconds,
            )

            # 5. Background path
            self.worker = BackgroundWorker(
                db=self.db,
                sync_pipeline=ContactSyncPipeline(
                    self.db,
                    self.instagram,
                    self.ai,
                    personalizer=personalizer,
                    alerts=self.alerts,
                    batch_size=s.sync_batch_size,
                    item_delay_ms=s.sync_item_delay_ms,
                    batch_delay_ms=s.sync_batch_delay_ms,
                    message_limit=s.sync_message_limit,
                    min_messages=s.sync_min_messages,
                ),
                token_manager=TokenManager(
                    self.db,
                    self.instagram,
                    alerts=self.alerts,
                    refresh_window=timedelta(days=s.token_refresh_window_days),
                ),
                dead_letter=DeadLetterProcessor(
                    self.db,
                    self.instagram,
                    alerts=self.alerts,
                    max_retries=s.dead_letter_max_retries,
                    send_attempts=s.dead_letter_send_attempts,
                ),
                alerts=self.alerts,
                sync_check_interval=s.sync_check_interval_seconds,
                dead_letter_interval=s.dead_letter_check_interval_seconds,
                token_refresh_hour_utc=s.token_refresh_hour_utc,
                default_full_sync=s.sync_default_full,
            )

            # 6. HTTP server
            app = create_app(
                self.processor,
                verify_token=s.instagram_verify_token,
                app_secret=s.instagram_app_secret,
                signature_required=s.webhook_signature_required,
                worker=self.worker,
            )
            self.server = uvicorn.Server(
                uvicorn.Config(app, host=s.host, port=s.port, log_config=None)
            )

            logger.info("All components initialized")
            return True

        except Exception as e:
            logger.error(f"Initialization failed: {e}")
            return False

    async def health_check(self) -> dict[str, bool]:
        """Check the store and the generation service."""
        results = {
            "database": await self.db.health_check(),
            "ai": await self.ai.health_check(),
        }
        for component, healthy in results.items():
            logger.info(f"Health check {component}: {'OK' if healthy else 'FAILED'}")
        return results

    async def start(self) -> None:
        """Run the background worker and serve webhooks until stopped."""
        self.worker.start()
        await self.alerts.info("startup", f"DM Pilot v{__version__} started")
        # uvicorn handles SIGINT/SIGTERM and returns from serve()
        await self.server.serve()

    async def stop(self, reason: str = "Shutdown requested") -> None:
        logger.info(f"Stopping: {reason}")
        if self.server is not None:
            self.server.should_exit = True
        if self.worker is not None:
            await self.worker.stop()
        if self.graph is not None:
            await self.graph.aclose()
        if self.telegram is not None:
            await self.telegram.stop()
        if self.db is not None and hasattr(self.db, "close"):
            self.db.close()


async def main() -> None:
    """
    Main entry point.

    Initializes all components and serves until a shutdown signal arrives.
    """
    settings = get_settings()

    logger.info("=" * 60)
    logger.info(f"Starting DM Pilot v{__version__}")
    logger.info(f"Listening on {settings.host}:{settings.port}")
    logger.info(f"Store: {'Supabase' if settings.supabase_enabled else 'SQLite'}")
    logger.info("=" * 60)

    pilot = DMPilot(settings)

    if not await pilot.initialize():
        logger.error("Failed to initialize - exiting")
        return

    if not all((await pilot.health_check()).values()):
        logger.warning("Some health checks failed - continuing anyway")

    try:
        await pilot.start()
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error(f"Server error: {e}")
    finally:
        await pilot.stop()

    logger.info("Shutdown complete")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
