from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from warden.logging import get_logger, mask_email
from warden.service.context import RequestContext
from warden.service.devices import DeviceInfo, device_fingerprint, ip_prefix
from warden.storage.common import generate_uuid
from warden.storage.models import LoginAttempt, SecurityEvent

logger = get_logger(__name__)

DEDUP_WINDOW = timedelta(minutes=10)
BRUTE_FORCE_WARNING_COUNT = 5
BRUTE_FORCE_WARNING_WINDOW = timedelta(minutes=15)
BRUTE_FORCE_CRITICAL_COUNT = 10
BRUTE_FORCE_CRITICAL_WINDOW = timedelta(minutes=5)
LOCATION_LOOKBACK = timedelta(days=90)
# Attempts older than every detector window are pruned by the session sweep
ATTEMPT_RETENTION = LOCATION_LOOKBACK


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AttemptLog:
    """Synchronous append of primary-auth attempts."""

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        *,
        email_attempted: str,
        success: bool,
        user_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> LoginAttempt:
        context = context or RequestContext()
        attempt = LoginAttempt(
            id=generate_uuid(),
            email_attempted=(email_attempted or "").strip().lower(),
            success=success,
            user_id=user_id,
            failure_reason=failure_reason,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=_now(),
        )
        self.store.record_login_attempt(attempt)
        if not success:
            logger.info(
                "login_attempt_failed",
                user_id=user_id,
                reason=failure_reason,
                email=mask_email(attempt.email_attempted),
            )
        return attempt

    def history(self, user_id: str, *, limit: int = 50, offset: int = 0):
        return self.store.list_login_attempts(user_id, limit=limit, offset=offset)


class SecurityEventLog:
    """Writes and reads the per-user security event stream."""

    def __init__(self, store) -> None:
        self.store = store

    def emit(
        self,
        user_id: Optional[str],
        event_type: str,
        *,
        severity: str = "info",
        description: str = "",
        metadata: Optional[dict] = None,
        ip_address: Optional[str] = None,
        dedup: bool = False,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent(
            id=generate_uuid(),
            user_id=user_id,
            event_type=event_type,
            severity=severity,
            description=description,
            metadata=metadata or {},
            ip_address=ip_address,
            created_at=_now(),
        )
        stored = self.store.create_security_event(
            event, dedup_window=DEDUP_WINDOW if dedup else None
        )
        if stored is None:
            logger.debug("security_event_deduplicated", user_id=user_id, event_type=event_type)
            return None
        log = logger.warning if severity in ("warning", "critical") else logger.info
        log("security_event", user_id=user_id, event_type=event_type, severity=severity)
        return stored

    def list_for_user(
        self,
        user_id: str,
        *,
        unacknowledged_only: bool = False,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        return self.store.list_security_events(
            user_id,
            unacknowledged_only=unacknowledged_only,
            event_type=event_type,
            limit=limit,
            offset=offset,
        )

    def acknowledge(self, user_id: str, event_ids: Optional[Sequence[str]] = None) -> int:
        return self.store.acknowledge_security_events(user_id, event_ids, _now())


@dataclass(frozen=True)
class AttemptJob:
    attempt: LoginAttempt
    session_id: Optional[str] = None
    device: Optional[DeviceInfo] = None


NewDeviceCallback = Callable[[str, AttemptJob], None]


class AnomalyDetector:
    """Watches appended login attempts and raises deduplicated security events.

    Jobs go through a bounded queue served by daemon worker threads; a full
    queue drops the job and counts it. With ``inline=True`` jobs run on the
    caller's thread. Detector errors are logged and counted, never raised.
    """

    def __init__(
        self,
        store,
        events: SecurityEventLog,
        *,
        queue_size: int = 1000,
        workers: int = 2,
        inline: bool = False,
        on_new_device: Optional[NewDeviceCallback] = None,
    ) -> None:
        self.store = store
        self.events = events
        self.inline = inline
        self.on_new_device = on_new_device
        self.worker_count = max(1, workers)
        self._queue: "queue.Queue[Optional[AttemptJob]]" = queue.Queue(maxsize=max(1, queue_size))
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()
        self.dropped = 0
        self.failures = 0
        self.processed = 0

    # ------------------------------------------------------------------
    # worker pool
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._state_lock:
            if self._threads:
                return
            for index in range(self.worker_count):
                thread = threading.Thread(
                    target=self._run, name=f"anomaly-detector-{index}", daemon=True
                )
                thread.start()
                self._threads.append(thread)
        logger.info("anomaly_detector_started", workers=self.worker_count)

    def stop(self, timeout: float = 5.0) -> None:
        with self._state_lock:
            threads, self._threads = self._threads, []
        for _ in threads:
            self._queue.put(None)
        for thread in threads:
            thread.join(timeout)
        if threads:
            logger.info("anomaly_detector_stopped", dropped=self.dropped, failures=self.failures)

    def drain(self) -> None:
        """Block until every queued job has been handled."""
        self._queue.join()

    def submit(self, job: AttemptJob) -> bool:
        if self.inline:
            self._handle(job)
            return True
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            with self._state_lock:
                self.dropped += 1
            logger.warning("anomaly_job_dropped", dropped=self.dropped)
            return False
        return True

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                self._handle(job)
            finally:
                self._queue.task_done()

    def _handle(self, job: AttemptJob) -> None:
        try:
            self.analyze(job)
        except Exception as exc:
            with self._state_lock:
                self.failures += 1
            logger.error(
                "anomaly_detection_failed",
                user_id=job.attempt.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            with self._state_lock:
                self.processed += 1

    # ------------------------------------------------------------------
    # rules
    # ------------------------------------------------------------------
    def analyze(self, job: AttemptJob) -> List[SecurityEvent]:
        attempt = job.attempt
        if not attempt.user_id:
            return []
        emitted: List[SecurityEvent] = []
        if attempt.success:
            for rule in (self._brute_force_resolved, self._new_location, self._new_device):
                event = rule(job)
                if event is not None:
                    emitted.append(event)
        else:
            event = self._brute_force(job)
            if event is not None:
                emitted.append(event)
        return emitted

    def _recent_failures(self, user_id: str, window: timedelta, now: datetime) -> int:
        return len(self.store.recent_login_attempts(user_id, now - window, success=False))

    def _brute_force(self, job: AttemptJob) -> Optional[SecurityEvent]:
        attempt = job.attempt
        now = attempt.created_at
        burst = self._recent_failures(attempt.user_id, BRUTE_FORCE_CRITICAL_WINDOW, now)
        if burst >= BRUTE_FORCE_CRITICAL_COUNT:
            severity, count, window = "critical", burst, BRUTE_FORCE_CRITICAL_WINDOW
        else:
            count = self._recent_failures(attempt.user_id, BRUTE_FORCE_WARNING_WINDOW, now)
            if count < BRUTE_FORCE_WARNING_COUNT:
                return None
            severity, window = "warning", BRUTE_FORCE_WARNING_WINDOW
        minutes = int(window.total_seconds() // 60)
        return self.events.emit(
            attempt.user_id,
            "brute_force_attempt",
            severity=severity,
            description=f"Multiple failed login attempts detected: {count} failures in {minutes} minutes",
            metadata={"failure_count": count, "time_window_minutes": minutes},
            ip_address=attempt.ip_address,
            dedup=True,
        )

    def _brute_force_resolved(self, job: AttemptJob) -> Optional[SecurityEvent]:
        attempt = job.attempt
        failures = self._recent_failures(
            attempt.user_id, BRUTE_FORCE_WARNING_WINDOW, attempt.created_at
        )
        if failures < BRUTE_FORCE_WARNING_COUNT:
            return None
        return self.events.emit(
            attempt.user_id,
            "brute_force_resolved",
            severity="info",
            description="Successful sign-in after repeated failures",
            metadata={"failure_count": failures},
            ip_address=attempt.ip_address,
            dedup=True,
        )

    def _new_location(self, job: AttemptJob) -> Optional[SecurityEvent]:
        attempt = job.attempt
        prefix = ip_prefix(attempt.ip_address)
        if prefix is None:
            return None
        prior = [
            a
            for a in self.store.recent_login_attempts(
                attempt.user_id, attempt.created_at - LOCATION_LOOKBACK, success=True
            )
            if a.id != attempt.id
        ]
        # The first recorded sign-in establishes the baseline
        if not prior:
            return None
        if any(ip_prefix(a.ip_address) == prefix for a in prior):
            return None
        location = job.device.location if job.device else None
        return self.events.emit(
            attempt.user_id,
            "login_from_new_location",
            severity="warning",
            description=f"Login detected from a new network: {prefix}",
            metadata={"network": prefix, "location": location},
            ip_address=attempt.ip_address,
            dedup=True,
        )

    def _new_device(self, job: AttemptJob) -> Optional[SecurityEvent]:
        attempt = job.attempt
        device = job.device
        if device is None:
            return None
        prior = [
            s
            for s in self.store.list_user_sessions(attempt.user_id, active_only=False)
            if s.id != job.session_id
        ]
        if not prior:
            return None
        seen = {
            s.fingerprint or device_fingerprint(s.browser, s.os, s.device_type) for s in prior
        }
        if device.fingerprint in seen:
            return None
        event = self.events.emit(
            attempt.user_id,
            "login_from_new_device",
            severity="info",
            description=f"Login detected from a new device: {device.device_name}",
            metadata={
                "browser": device.browser,
                "os": device.os,
                "device_type": device.device_type,
                "device_fingerprint": device.fingerprint,
            },
            ip_address=attempt.ip_address,
            dedup=True,
        )
        if event is not None and self.on_new_device is not None:
            self.on_new_device(attempt.user_id, job)
        return event
