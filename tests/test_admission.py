"""
Tests for admission control.

Tests cover:
- Fixed window accounting per caller
- Unlimited quotas never touching the counter store
- Exempt routes and methods
- Tier guidance on denial
- Failing closed when the counter store is unavailable
- The Redis counter backend
"""

from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from papyrus_backend.admission import (
    ANONYMOUS_HINT,
    SPREAD_HINT,
    UPGRADE_HINT,
    AdmissionController,
    AdmissionRequest,
    Allow,
    Deny,
    Identity,
    Limited,
    RedisQuotaCounter,
    SQLiteQuotaCounter,
    Unlimited,
    client_fingerprint,
    quota_from_value,
)
from papyrus_backend.errors import BackingStoreUnavailable
from papyrus_backend.models import ApiKeyTier

NOW = 1_700_000_000.0


def identity(tier=ApiKeyTier.BASIC, quota=None, key_hash="abc123"):
    return Identity(id="key-1", hash=key_hash, name="caller", tier=tier, quota=quota or Limited(10))


def request(route="/pdf/jobs", method="POST", identity=None, ip="10.0.0.1", agent="pytest"):
    return AdmissionRequest(route=route, method=method, client_ip=ip, user_agent=agent, identity=identity)


@pytest.fixture
def counter(tmp_path):
    return SQLiteQuotaCounter(tmp_path / "quota.db")


@pytest.fixture
def controller(counter):
    return AdmissionController(counter, default_limit=5, window_seconds=60, exempt_routes=["/healthz", "/pdf/templates"])


class TestQuota:
    """Tests for the tagged quota type."""

    def test_zero_means_unlimited(self):
        """Stored value 0 maps to Unlimited."""
        assert quota_from_value(0) == Unlimited()
        assert quota_from_value(25) == Limited(25)

    def test_limited_needs_a_positive_count(self):
        """A Limited quota of zero requests is rejected."""
        with pytest.raises(ValueError):
            Limited(0)


class TestFixedWindow:
    """Tests for counting requests within a window."""

    def test_request_over_quota_is_denied(self, controller):
        """With quota Q, the (Q+1)th request in the window is denied with retry_after <= W."""
        caller = identity(quota=Limited(3))
        decisions = [controller.admit(request(identity=caller), now=NOW + i) for i in range(4)]

        assert all(isinstance(decision, Allow) for decision in decisions[:3])
        assert [decision.remaining for decision in decisions[:3]] == [2, 1, 0]
        denied = decisions[3]
        assert isinstance(denied, Deny)
        assert denied.limit == 3
        assert 1 <= denied.retry_after <= 60
        assert denied.retry_after == 57

    def test_window_resets_after_its_length(self, controller):
        """A new window starts once the previous one has ended."""
        caller = identity(quota=Limited(1))
        assert isinstance(controller.admit(request(identity=caller), now=NOW), Allow)
        assert isinstance(controller.admit(request(identity=caller), now=NOW + 30), Deny)
        assert isinstance(controller.admit(request(identity=caller), now=NOW + 60), Allow)

    def test_anonymous_callers_use_default_limit(self, controller):
        """Callers without a credential get the default quota."""
        decisions = [controller.admit(request(), now=NOW) for _ in range(6)]
        assert [isinstance(decision, Allow) for decision in decisions] == [True] * 5 + [False]
        assert decisions[-1].hint == ANONYMOUS_HINT

    def test_callers_are_counted_separately(self, controller):
        """Two API keys never share a window."""
        first = identity(quota=Limited(1), key_hash="first")
        second = identity(quota=Limited(1), key_hash="second")
        assert isinstance(controller.admit(request(identity=first), now=NOW), Allow)
        assert isinstance(controller.admit(request(identity=second), now=NOW), Allow)
        assert isinstance(controller.admit(request(identity=first), now=NOW), Deny)

    def test_unlimited_quota_never_counts(self):
        """10,000 requests from an unlimited identity are admitted without touching the store."""
        store = MagicMock()
        controller = AdmissionController(store, default_limit=5, window_seconds=60)
        caller = identity(tier=ApiKeyTier.UNLIMITED, quota=Unlimited())

        for i in range(10_000):
            decision = controller.admit(request(identity=caller), now=NOW + i / 1000)
            assert isinstance(decision, Allow)
        store.hit.assert_not_called()


class TestCallerKeys:
    """Tests for accounting keys."""

    def test_api_key_callers_are_keyed_by_hash(self, controller):
        """Authenticated callers are accounted by key hash."""
        assert controller.accounting_key(request(identity=identity(key_hash="deadbeef"))) == "api_key:deadbeef"

    def test_anonymous_fingerprint_includes_user_agent(self):
        """Same address with different agents gives different keys."""
        first = client_fingerprint("10.0.0.1", "Mozilla/5.0")
        second = client_fingerprint("10.0.0.1", "curl/8.0")
        assert first.startswith("ip:10.0.0.1:")
        assert first != second
        assert len(first.rsplit(":", 1)[1]) == 8


class TestExemptions:
    """Tests for routes and methods skipped by admission."""

    def test_exempt_routes_are_not_counted(self, controller):
        """Health checks and template listing bypass accounting."""
        for _ in range(20):
            decision = controller.admit(request(route="/healthz", method="GET"), now=NOW)
            assert isinstance(decision, Allow) and decision.exempt
        assert controller.admit(request(route="/pdf/templates", method="GET"), now=NOW).exempt

    def test_prefix_does_not_match_partial_segments(self, controller):
        """``/healthz`` does not exempt ``/healthzfoo``."""
        assert not controller.is_exempt("/healthzfoo", "GET")

    def test_preflight_requests_are_not_counted(self, controller):
        """CORS preflight never consumes quota."""
        assert controller.admit(request(method="OPTIONS"), now=NOW).exempt


class TestHints:
    """Tests for denial guidance."""

    @pytest.mark.parametrize(
        "tier,expected",
        [(ApiKeyTier.BASIC, UPGRADE_HINT), (ApiKeyTier.PREMIUM, SPREAD_HINT)],
    )
    def test_hint_depends_on_tier(self, controller, tier, expected):
        """Basic keys are told to upgrade, others to spread their requests."""
        caller = identity(tier=tier, quota=Limited(1))
        controller.admit(request(identity=caller), now=NOW)
        assert controller.admit(request(identity=caller), now=NOW).hint == expected


class TestStoreOutage:
    """Tests for failing closed."""

    def test_unavailable_store_denies(self, caplog):
        """A counter outage denies the request and is logged distinctly."""
        store = MagicMock()
        store.hit.side_effect = BackingStoreUnavailable("quota", "connection refused")
        controller = AdmissionController(store, default_limit=5, window_seconds=60)

        with caplog.at_level("ERROR"):
            decision = controller.admit(request(), now=NOW)

        assert isinstance(decision, Deny)
        assert decision.store_unavailable
        assert decision.retry_after >= 1
        assert "admission store unavailable" in caplog.text


class TestRedisCounter:
    """Tests for the Redis-backed counter."""

    def test_hit_reads_count_and_ttl(self):
        """INCR, PEXPIRE NX and PTTL run in one transaction."""
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [3, False, 42_000]

        state = RedisQuotaCounter(client).hit("api_key:abc", 60, NOW)

        assert state.count == 3
        assert state.reset_at == pytest.approx(NOW + 42)
        pipe.incr.assert_called_once_with("papyrus:ratelimit:api_key:abc")
        pipe.pexpire.assert_called_once_with("papyrus:ratelimit:api_key:abc", 60_000, nx=True)

    def test_connection_errors_become_store_unavailable(self):
        """Redis errors surface as BackingStoreUnavailable."""
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")

        with pytest.raises(BackingStoreUnavailable):
            RedisQuotaCounter(client).hit("ip:1.2.3.4:abc", 60, NOW)
