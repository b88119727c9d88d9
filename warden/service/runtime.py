from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from warden.config import get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.admin import AdminPolicyService
from warden.service.audit import AuditWriter
from warden.service.credentials import CredentialService
from warden.service.email import EmailDispatcher
from warden.service.factors import FactorRegistry
from warden.service.federation import FederationReconciler
from warden.service.locks import KeyedLock
from warden.service.login import LoginService
from warden.service.notifications import Notifier
from warden.service.oauth import OAuthService
from warden.service.policy import PolicyResolver
from warden.service.sessions import SessionService
from warden.service.surveillance import AnomalyDetector, AttemptJob, AttemptLog, SecurityEventLog
from warden.service.tokens import TokenService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.totp_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=self.settings.totp_encryption_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and OAuth state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and OAuth "
                    "state are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.locks = KeyedLock()
        self.audit = AuditWriter(self.store)
        self.events = SecurityEventLog(self.store)
        self.attempts = AttemptLog(self.store)
        self.tokens = TokenService(self.settings)
        self.policies = PolicyResolver(
            self.store, cache_ttl_seconds=self.settings.policy_cache_ttl_seconds
        )
        self.email = EmailDispatcher(self.store, self.settings)
        self.notifier = Notifier(self.email, self.policies)
        self.sessions = SessionService(
            self.store, self.settings, self.tokens, self.events, locks=self.locks
        )
        self.factors = FactorRegistry(
            self.store,
            self.settings,
            dispatcher=self.email,
            policies=self.policies,
            audit=self.audit,
            events=self.events,
            notifier=self.notifier,
            locks=self.locks,
        )
        self.credentials = CredentialService(
            self.store,
            self.settings,
            dispatcher=self.email,
            audit=self.audit,
            events=self.events,
            sessions=self.sessions,
            factors=self.factors,
            locks=self.locks,
        )
        # Tests run detection on the request thread so events are visible immediately
        self.detector = AnomalyDetector(
            self.store,
            self.events,
            queue_size=self.settings.anomaly_queue_size,
            workers=self.settings.anomaly_workers,
            inline=self.settings.test_mode,
            on_new_device=self._notify_new_device,
        )
        self.login = LoginService(
            self.store,
            self.settings,
            credentials=self.credentials,
            policies=self.policies,
            factors=self.factors,
            sessions=self.sessions,
            tokens=self.tokens,
            attempts=self.attempts,
            detector=self.detector,
            events=self.events,
            audit=self.audit,
            notifier=self.notifier,
            locks=self.locks,
        )
        self.federation = FederationReconciler(self.store, self.audit)
        self.oauth = OAuthService(self.settings, self.cache)
        self.admin = AdminPolicyService(
            self.store,
            self.settings,
            policies=self.policies,
            audit=self.audit,
            dispatcher=self.email,
            factors=self.factors,
            sessions=self.sessions,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_provider=self.settings.default_email_provider.value,
            oauth_providers=self.oauth.configured_providers(),
        )

    async def close(self) -> None:
        self.detector.stop()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)

    def _notify_new_device(self, user_id: str, job: AttemptJob) -> None:
        user = self.store.get_user(user_id)
        device = job.device
        self.notifier.new_device(
            user,
            device=device.device_name if device else "Unknown device",
            location=device.location if device else None,
            ip_address=job.attempt.ip_address,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        if runtime is not None:
            runtime.detector.stop()
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = [
    "Runtime",
    "check_rate_limit",
    "get_runtime",
    "reset_runtime_for_tests",
]
