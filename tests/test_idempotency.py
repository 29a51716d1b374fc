"""
Tests for the idempotency cache.

Tests cover:
- Binding a token to the first job handle
- Expiry after the TTL
- Concurrent submissions sharing a token
- Releasing a token when its job could not be accepted
- The Redis token backend
"""

import json
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from papyrus_backend.errors import BackingStoreUnavailable
from papyrus_backend.idempotency import CachedResult, IdempotencyCache, RedisTokenBackend, SQLiteTokenBackend
from papyrus_backend.models import GenerationRequest, JobStage
from papyrus_backend.pipeline import PipelineService
from papyrus_backend.stages import GENERATE_QUEUE

NOW = 1_700_000_000.0


@pytest.fixture
def cache(tmp_path):
    return IdempotencyCache(SQLiteTokenBackend(tmp_path / "tokens.db"), ttl_seconds=60)


class TestIdempotencyCache:
    """Tests for lookup and store."""

    def test_unknown_token(self, cache):
        """A token never stored is a miss."""
        assert cache.lookup("api_key:a", "token", now=NOW) is None

    def test_first_store_wins(self, cache):
        """A second store under the same token returns the first binding."""
        first = cache.store("api_key:a", "token", CachedResult("job-1", NOW), now=NOW)
        second = cache.store("api_key:a", "token", CachedResult("job-2", NOW + 1), now=NOW + 1)

        assert first.job_id == "job-1"
        assert second.job_id == "job-1"
        assert cache.lookup("api_key:a", "token", now=NOW + 2).job_id == "job-1"

    def test_tokens_are_scoped(self, cache):
        """The same token under two scopes binds two jobs."""
        cache.store("api_key:a", "token", CachedResult("job-a", NOW), now=NOW)
        cache.store("api_key:b", "token", CachedResult("job-b", NOW), now=NOW)
        assert cache.lookup("api_key:b", "token", now=NOW).job_id == "job-b"

    def test_token_expires_after_ttl(self, cache):
        """After the TTL the token can be bound to a new job."""
        cache.store("api_key:a", "token", CachedResult("job-1", NOW), now=NOW)

        assert cache.lookup("api_key:a", "token", now=NOW + 61) is None
        rebound = cache.store("api_key:a", "token", CachedResult("job-2", NOW + 61), now=NOW + 61)
        assert rebound.job_id == "job-2"

    def test_purge_expired(self, tmp_path):
        """Expired rows are removed by the janitor sweep."""
        backend = SQLiteTokenBackend(tmp_path / "tokens.db")
        IdempotencyCache(backend, ttl_seconds=10).store("s", "t", CachedResult("job", NOW), now=NOW)
        assert backend.purge_expired(now=NOW + 5) == 0
        assert backend.purge_expired(now=NOW + 11) == 1

    def test_release_unbinds_matching_job(self, cache):
        """Releasing a token bound to the given job frees it for a new binding."""
        cache.store("api_key:a", "token", CachedResult("job-1", NOW), now=NOW)

        assert cache.release("api_key:a", "token", "job-1") is True
        assert cache.lookup("api_key:a", "token", now=NOW) is None
        assert cache.store("api_key:a", "token", CachedResult("job-2", NOW), now=NOW).job_id == "job-2"

    def test_release_keeps_other_binding(self, cache):
        """A token bound to another job is left alone."""
        cache.store("api_key:a", "token", CachedResult("job-1", NOW), now=NOW)

        assert cache.release("api_key:a", "token", "job-2") is False
        assert cache.release("api_key:a", "missing", "job-1") is False
        assert cache.lookup("api_key:a", "token", now=NOW).job_id == "job-1"


class TestConcurrentSubmissions:
    """Tests for racing submissions."""

    def test_same_token_creates_one_job(self, services, budget_request):
        """Parallel submissions with one token all get the same job id."""
        pipeline = PipelineService(services.store, services.queue, services.idempotency, services.objects)
        request = GenerationRequest.model_validate(budget_request)
        results = []
        barrier = threading.Barrier(8)

        def submit():
            barrier.wait()
            results.append(pipeline.submit(request, scope="api_key:race", owner="key-1", idempotency_token="dup"))

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        job_ids = {job_id for job_id, _ in results}
        assert len(results) == 8
        assert len(job_ids) == 1
        assert sum(1 for _, replayed in results if not replayed) == 1
        assert len(services.store.list_jobs()) == 1
        assert services.queue.depth(GENERATE_QUEUE) == 1


class TestFailedSubmissions:
    """Tests for submissions that cannot be recorded or queued."""

    def test_create_failure_releases_token(self, services, budget_request, monkeypatch):
        """A retry after a failed create gets a new job instead of a dangling replay."""
        pipeline = PipelineService(services.store, services.queue, services.idempotency, services.objects)
        request = GenerationRequest.model_validate(budget_request)

        monkeypatch.setattr(services.store, "create", MagicMock(side_effect=BackingStoreUnavailable("status", "locked")))
        with pytest.raises(BackingStoreUnavailable):
            pipeline.submit(request, scope="api_key:a", owner="key-1", idempotency_token="retry-me")
        assert services.idempotency.lookup("api_key:a", "retry-me") is None

        monkeypatch.undo()
        job_id, replayed = pipeline.submit(request, scope="api_key:a", owner="key-1", idempotency_token="retry-me")
        assert replayed is False
        assert services.store.get(job_id) is not None
        assert services.idempotency.lookup("api_key:a", "retry-me").job_id == job_id

    def test_enqueue_failure_releases_token(self, services, budget_request, monkeypatch):
        """The job is marked failed and its token freed when the queue is down."""
        pipeline = PipelineService(services.store, services.queue, services.idempotency, services.objects)
        request = GenerationRequest.model_validate(budget_request)
        monkeypatch.setattr(services.queue, "enqueue", MagicMock(side_effect=BackingStoreUnavailable("queue", "locked")))

        with pytest.raises(BackingStoreUnavailable):
            pipeline.submit(request, scope="api_key:a", owner="key-1", idempotency_token="retry-me")

        [job] = services.store.list_jobs()
        assert job.stage == JobStage.FAILED
        assert services.idempotency.lookup("api_key:a", "retry-me") is None

    def test_release_failure_keeps_original_error(self, services, budget_request, monkeypatch):
        """If the token cannot be released the caller still sees the create failure."""
        pipeline = PipelineService(services.store, services.queue, services.idempotency, services.objects)
        request = GenerationRequest.model_validate(budget_request)
        monkeypatch.setattr(services.store, "create", MagicMock(side_effect=BackingStoreUnavailable("status", "locked")))
        monkeypatch.setattr(
            services.idempotency, "release", MagicMock(side_effect=BackingStoreUnavailable("idempotency", "down"))
        )

        with pytest.raises(BackingStoreUnavailable) as excinfo:
            pipeline.submit(request, scope="api_key:a", owner="key-1", idempotency_token="retry-me")
        assert excinfo.value.store == "status"


class TestRedisTokenBackend:
    """Tests for the Redis-backed token store."""

    def test_set_if_absent_binds_new_value(self):
        """SET NX succeeding binds the caller's value."""
        client = MagicMock()
        client.set.return_value = True
        value = {"job_id": "job-1", "created_at": NOW}

        assert RedisTokenBackend(client).set_if_absent("s:t", value, 60, NOW) == value
        client.set.assert_called_once_with("papyrus:idempotency:s:t", json.dumps(value), nx=True, ex=60)

    def test_set_if_absent_returns_existing_value(self):
        """Losing SET NX reads back the winner."""
        client = MagicMock()
        client.set.return_value = None
        client.get.return_value = json.dumps({"job_id": "winner", "created_at": NOW})

        bound = RedisTokenBackend(client).set_if_absent("s:t", {"job_id": "loser", "created_at": NOW}, 60, NOW)
        assert bound["job_id"] == "winner"

    def test_errors_fail_closed(self):
        """Redis errors surface as BackingStoreUnavailable."""
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("down")

        with pytest.raises(BackingStoreUnavailable):
            RedisTokenBackend(client).get("s:t", NOW)

    def test_release_runs_compare_and_delete(self):
        """Release is one server-side script keyed on the token and job id."""
        client = MagicMock()
        client.eval.return_value = 1

        assert RedisTokenBackend(client).release("s:t", "job-1") is True
        args = client.eval.call_args.args
        assert args[1:] == (1, "papyrus:idempotency:s:t", "job-1")
        assert "DEL" in args[0]

    def test_release_of_other_binding_is_a_no_op(self):
        """The script returns 0 when the token points at another job."""
        client = MagicMock()
        client.eval.return_value = 0
        assert RedisTokenBackend(client).release("s:t", "job-1") is False

    def test_release_errors_fail_closed(self):
        """Redis errors during release surface as BackingStoreUnavailable."""
        client = MagicMock()
        client.eval.side_effect = RedisConnectionError("down")

        with pytest.raises(BackingStoreUnavailable):
            RedisTokenBackend(client).release("s:t", "job-1")
