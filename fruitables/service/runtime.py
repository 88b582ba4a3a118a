from __future__ import annotations

import threading

from fruitables.config import Settings, get_settings, reset_settings_cache
from fruitables.logging import get_logger
from fruitables.service.auth import TokenLifecycleManager
from fruitables.service.email import EmailService
from fruitables.service.sweeper import ExpirySweeper
from fruitables.service.tokens import TokenIssuer
from fruitables.storage.memory import MemoryStore
from fruitables.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Process-wide wiring of settings, store, issuer, mailer, manager and sweeper."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store: PostgresStore | MemoryStore
        if self.settings.use_memory_store:
            self.store = MemoryStore(max_admins=self.settings.max_admins)
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
                max_admins=self.settings.max_admins,
            )
        self.issuer = TokenIssuer(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = TokenLifecycleManager(
            self.store, self.issuer, self.email, self.settings
        )
        self.sweeper = ExpirySweeper(
            self.store,
            token_interval=self.settings.sweeper_token_interval_seconds,
            cart_interval=self.settings.sweeper_cart_interval_seconds,
            cart_window=(
                self.settings.cart_sweep_start_hour,
                self.settings.cart_sweep_end_hour,
            ),
        )
        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            email_configured=self.email.is_configured,
            sweeper_enabled=self.settings.sweeper_enabled,
        )

    async def open(self) -> None:
        await self.store.open()

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
