from __future__ import annotations

from typing import Optional

from telemed_auth.config import Settings
from telemed_auth.logging import get_logger
from telemed_auth.service.auth import AuthService
from telemed_auth.service.clock import Clock, SystemClock
from telemed_auth.service.passwords import CredentialVerifier
from telemed_auth.service.sweeper import SessionSweeper
from telemed_auth.service.tokens import TokenCodec
from telemed_auth.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Wires the auth core together.

    Each instance owns its own store, codec and sweeper; nothing is cached at
    module level, so tests and embedding applications build as many as they
    need.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            persisted=self.settings.state_path is not None,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

        try:
            self.store = store or MemoryStore(state_path=self.settings.state_path)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        # Raises ConfigurationError on unusable signing keys.
        self.codec = TokenCodec(self.settings, self.clock)
        self.verifier = CredentialVerifier(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            clock=self.clock,
            verifier=self.verifier,
            codec=self.codec,
        )
        self.sweeper = SessionSweeper(
            self.auth, interval=self.settings.session_sweep_interval_seconds
        )
        logger.info(
            "runtime_initialized",
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            max_failed_logins=self.settings.max_failed_logins,
            sweep_interval_seconds=self.settings.session_sweep_interval_seconds,
        )

    async def start(self) -> None:
        await self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        logger.info("runtime_closed")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
