"""Tests for login attempt recording and the anomaly detector.

The runtime runs detection inline under TEST_MODE, so events written by a
login are visible as soon as the call returns.
"""

import pytest

from warden.service.context import RequestContext
from warden.service.errors import AuthenticationError
from warden.service.runtime import get_runtime
from warden.service.surveillance import AnomalyDetector, AttemptJob

PASSWORD = "Str0ng!Passw0rd"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    return runtime.credentials.register("watch@example.com", "watched", PASSWORD)


def fail_login(runtime, times, context=None):
    for _ in range(times):
        with pytest.raises(AuthenticationError):
            runtime.login.login("watch@example.com", "Wr0ng!Passw0rd", context or RequestContext())


def events_of(runtime, user, event_type):
    rows, _ = runtime.events.list_for_user(user.id, event_type=event_type)
    return rows


class TestAttemptLog:
    def test_failures_recorded_with_reason(self, runtime, user):
        fail_login(runtime, 1, RequestContext(ip_address="203.0.113.7"))
        rows, total = runtime.attempts.history(user.id)

        assert total == 1
        assert rows[0].success is False
        assert rows[0].failure_reason == "invalid_password"
        assert rows[0].ip_address == "203.0.113.7"

    def test_unknown_identifier_recorded_without_user(self, runtime):
        with pytest.raises(AuthenticationError) as exc:
            runtime.login.login("ghost@example.com", PASSWORD, RequestContext())
        assert exc.value.error_code == "invalid_credentials"


class TestBruteForce:
    """Tests for failure bursts."""

    def test_below_threshold_is_quiet(self, runtime, user):
        fail_login(runtime, 4)
        assert events_of(runtime, user, "brute_force_attempt") == []

    def test_warning_then_dedup_then_critical(self, runtime, user):
        fail_login(runtime, 5)
        events = events_of(runtime, user, "brute_force_attempt")
        assert [e.severity for e in events] == ["warning"]

        fail_login(runtime, 4)
        assert len(events_of(runtime, user, "brute_force_attempt")) == 1

        fail_login(runtime, 1)
        severities = sorted(e.severity for e in events_of(runtime, user, "brute_force_attempt"))
        assert severities == ["critical", "warning"]

        fail_login(runtime, 1)
        assert len(events_of(runtime, user, "brute_force_attempt")) == 2

    def test_success_after_burst_is_resolved(self, runtime, user):
        fail_login(runtime, 5)
        runtime.login.login("watch@example.com", PASSWORD, RequestContext())

        resolved = events_of(runtime, user, "brute_force_resolved")
        assert len(resolved) == 1
        assert resolved[0].metadata["failure_count"] == 5


class TestNewLocation:
    def test_first_login_sets_baseline(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(ip_address="198.51.100.4"))
        assert events_of(runtime, user, "login_from_new_location") == []

    def test_same_network_is_quiet(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(ip_address="198.51.100.4"))
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(ip_address="198.51.7.9"))
        assert events_of(runtime, user, "login_from_new_location") == []

    def test_new_network_raises_warning(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(ip_address="198.51.100.4"))
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(ip_address="203.0.113.9"))

        events = events_of(runtime, user, "login_from_new_location")
        assert len(events) == 1
        assert events[0].severity == "warning"
        assert events[0].metadata["network"] == "203.0.0.0/16"


class TestNewDevice:
    def test_first_device_is_quiet(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(user_agent=CHROME_MAC))
        assert events_of(runtime, user, "login_from_new_device") == []

    def test_second_device_raises_event_and_email(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(user_agent=CHROME_MAC))
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(user_agent=FIREFOX_LINUX))

        events = events_of(runtime, user, "login_from_new_device")
        assert len(events) == 1
        assert events[0].metadata["browser"].startswith("Firefox")
        assert runtime.email.outbox[-1].template_type == "new_device_login"

    def test_known_device_is_quiet(self, runtime, user):
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(user_agent=CHROME_MAC))
        runtime.login.login("watch@example.com", PASSWORD, RequestContext(user_agent=CHROME_MAC))
        assert events_of(runtime, user, "login_from_new_device") == []


class TestDetectorPool:
    """Tests for the detector's failure containment."""

    def test_rule_errors_are_counted_not_raised(self, runtime, user):
        class BrokenStore:
            def recent_login_attempts(self, *args, **kwargs):
                raise RuntimeError("store offline")

        detector = AnomalyDetector(BrokenStore(), runtime.events, inline=True)
        attempt = runtime.attempts.record(
            email_attempted=user.email, success=False, user_id=user.id
        )

        assert detector.submit(AttemptJob(attempt=attempt)) is True
        assert detector.failures == 1

    def test_anonymous_attempts_are_ignored(self, runtime):
        attempt = runtime.attempts.record(email_attempted="ghost@example.com", success=False)
        assert runtime.detector.analyze(AttemptJob(attempt=attempt)) == []

    def test_worker_threads_process_queue(self, runtime, user):
        detector = AnomalyDetector(runtime.store, runtime.events, workers=1)
        detector.start()
        try:
            for _ in range(5):
                attempt = runtime.attempts.record(
                    email_attempted=user.email, success=False, user_id=user.id
                )
                detector.submit(AttemptJob(attempt=attempt))
            detector.drain()
        finally:
            detector.stop()

        assert detector.processed == 5
        assert len(events_of(runtime, user, "brute_force_attempt")) == 1
