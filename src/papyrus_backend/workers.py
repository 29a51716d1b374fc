"""
Stage workers for the document pipeline.

Each stage (generate, sign, deliver) is served by its own worker group:
a process running N consumer threads on the stage's queue. Delivery is
at-least-once, so every handler first reads the job and decides whether
there is anything left to do:

- missing or terminal job: acknowledge and skip
- job already at this stage's "done" stage: only re-send the next message
  (a previous delivery crashed between the transition and the enqueue)
- job further along the pipeline: acknowledge and skip
- otherwise: enter the in-progress stage, do the work, record the outputs,
  enqueue the next stage

Artifact keys are derived from the job id, so re-running a stage overwrites
its own output instead of creating a second copy.

Run with ``papyrus-worker {generate,sign,deliver,janitor} [--concurrency N]``.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import start_http_server
from pydantic import ValidationError

from .admission import SQLiteQuotaCounter
from .configuration import load_config
from .database import JobRecord, JobStatusStore
from .errors import IllegalTransition, JobNotFound, PermanentStageError, TransientStageError
from .idempotency import SQLiteTokenBackend
from .job_queue import PipelineQueue, QueueMessage, RetryingConsumer
from .metrics import GENERATION_DURATION, POOL_IN_USE, QUEUE_TIME, STAGE_FAILURES
from .models import GenerationRequest, JobStage
from .page_pool import RenderPool
from .render import RenderDispatcher, TemplateStore, TypstContext
from .services import Services, build_services
from .stages import DELIVER, GENERATE, SIGN, STEPS_BY_QUEUE, PipelineStep, is_terminal, stage_rank
from .storage import ObjectStore
from .utils import configure_logging, utcnow

logger = logging.getLogger(__name__)


class StageWorker:
    """
    Base class for the three pipeline stages.

    Subclasses set ``step`` and implement ``perform`` (the stage's work,
    returning the metadata to record) and ``next_body`` (the message for the
    following stage).
    """

    step: PipelineStep

    def __init__(self, store: JobStatusStore, queue: PipelineQueue, objects: ObjectStore) -> None:
        self.store = store
        self.queue = queue
        self.objects = objects

    def handle(self, message: QueueMessage) -> None:
        job_id = message.body.get("job_id")
        if not job_id:
            raise PermanentStageError(f"Message {message.id} carries no job_id")

        if message.attempts == 1:
            QUEUE_TIME.labels(queue=self.step.queue).observe(max(0.0, time.time() - message.enqueued_at))

        record = self.store.get(job_id)
        if record is None:
            logger.warning(f"[{self.step.name}] job {job_id} no longer exists, skipping")
            return
        if is_terminal(record.stage):
            logger.info(f"[{self.step.name}] job {job_id} already {record.stage.value}, skipping")
            return
        if record.stage is self.step.done:
            logger.info(f"[{self.step.name}] job {job_id} already {record.stage.value}, re-sending next message")
            self.forward(record)
            return
        if stage_rank(record.stage) > stage_rank(self.step.done):
            logger.info(f"[{self.step.name}] job {job_id} is past this stage ({record.stage.value}), skipping")
            return
        if stage_rank(record.stage) < stage_rank(self.step.in_progress) - 1:
            # Earlier stage has not recorded its outcome yet
            raise TransientStageError(f"Job {job_id} is still {record.stage.value}")

        logger.info(f"[{self.step.name}] job {job_id} started (attempt {message.attempts})")
        started = time.monotonic()
        self.store.transition(job_id, self.step.in_progress, {"attempts": message.attempts})
        try:
            outputs = self.perform(record, message)
        except Exception as exc:
            kind = "permanent" if isinstance(exc, PermanentStageError) else "transient"
            STAGE_FAILURES.labels(stage=self.step.name, kind=kind).inc()
            logger.warning(f"[{self.step.name}] job {job_id} failed ({kind}, attempt {message.attempts}): {exc}")
            raise

        try:
            record = self.store.transition(job_id, self.step.done, outputs, from_stage=self.step.in_progress)
        except IllegalTransition as exc:
            # A concurrent redelivery finished first (or the job was failed meanwhile)
            logger.warning(f"[{self.step.name}] {exc}; leaving the job as it is")
            return
        logger.info(f"[{self.step.name}] job {job_id} finished in {time.monotonic() - started:.2f}s")
        self.forward(record)

    def perform(self, record: JobRecord, message: QueueMessage) -> Dict[str, Any]:
        raise NotImplementedError

    def next_body(self, record: JobRecord) -> Dict[str, Any]:
        return {"job_id": record.id}

    def forward(self, record: JobRecord) -> None:
        if self.step.next_queue is None:
            return
        next_step = STEPS_BY_QUEUE[self.step.next_queue]
        self.queue.enqueue(next_step.queue, self.next_body(record), dedupe_key=next_step.dedupe_key(record.id))

    def give_up(self, message: QueueMessage, exc: BaseException) -> None:
        """Mark the job failed once its message is abandoned."""
        job_id = message.body.get("job_id")
        STAGE_FAILURES.labels(stage=self.step.name, kind="given_up").inc()
        if not job_id:
            return
        try:
            self.store.transition(job_id, JobStage.FAILED, {"error": str(exc) or exc.__class__.__name__})
        except (JobNotFound, IllegalTransition) as transition_error:
            logger.warning(f"[{self.step.name}] could not mark job {job_id} failed: {transition_error}")
        else:
            logger.error(f"[{self.step.name}] job {job_id} failed: {exc}")


class GenerateWorker(StageWorker):
    step = GENERATE

    def __init__(self, store: JobStatusStore, queue: PipelineQueue, objects: ObjectStore, dispatcher: RenderDispatcher) -> None:
        super().__init__(store, queue, objects)
        self.dispatcher = dispatcher

    def perform(self, record: JobRecord, message: QueueMessage) -> Dict[str, Any]:
        try:
            request = GenerationRequest.model_validate(message.body.get("payload") or record.payload)
        except ValidationError as exc:
            raise PermanentStageError(f"Invalid payload: {exc.errors(include_url=False)}") from exc

        started = time.perf_counter()
        document = self.dispatcher.render(request, record.id)
        GENERATION_DURATION.labels(document_type=request.type).observe(time.perf_counter() - started)

        stored = self.objects.put(document.content, document.filename)
        return {"artifact_ref": stored.key, "prefix": stored.prefix, "size_bytes": len(document.content)}

    def next_body(self, record: JobRecord) -> Dict[str, Any]:
        return {"job_id": record.id, "artifact_ref": record.artifact_ref}


class SignWorker(StageWorker):
    step = SIGN

    def perform(self, record: JobRecord, message: QueueMessage) -> Dict[str, Any]:
        artifact_ref = message.body.get("artifact_ref") or record.artifact_ref
        if not artifact_ref:
            raise PermanentStageError(f"Job {record.id} has no generated artifact")
        signed = self.objects.copy(artifact_ref)
        return {"signed_ref": signed.key, "signed_from": artifact_ref}

    def next_body(self, record: JobRecord) -> Dict[str, Any]:
        return {"job_id": record.id, "artifact_ref": record.metadata.get("signed_ref")}


class DeliverWorker(StageWorker):
    step = DELIVER

    def __init__(self, store: JobStatusStore, queue: PipelineQueue, objects: ObjectStore, url_ttl: int = 3600) -> None:
        super().__init__(store, queue, objects)
        self.url_ttl = url_ttl

    def perform(self, record: JobRecord, message: QueueMessage) -> Dict[str, Any]:
        signed_ref = message.body.get("artifact_ref") or record.metadata.get("signed_ref")
        if not signed_ref:
            raise PermanentStageError(f"Job {record.id} has no signed artifact")
        url = self.objects.signed_url(signed_ref, self.url_ttl)
        expires_at = utcnow() + timedelta(seconds=self.url_ttl)
        return {"result_url": url, "url_expires_at": expires_at.isoformat()}


def build_consumer(worker: StageWorker, services: Services) -> RetryingConsumer:
    return RetryingConsumer(
        services.queue,
        worker.step.queue,
        worker.handle,
        services.retry_policy,
        on_give_up=worker.give_up,
        visibility_timeout=float(services.config.queue.visibility_timeout),
        poll_interval=float(services.config.queue.poll_interval),
    )


class Janitor:
    """Retention sweep: old terminal jobs, finished messages, expired tokens and counters."""

    def __init__(self, services: Services) -> None:
        self.services = services
        self.retention = timedelta(days=float(services.config.retention.days))

    def run_once(self) -> Dict[str, int]:
        services = self.services
        purged = {
            "jobs": services.store.purge_expired(self.retention),
            "messages": services.queue.purge_finished(self.retention.total_seconds()),
        }
        # Redis expires these keys on its own
        if isinstance(services.tokens, SQLiteTokenBackend):
            purged["idempotency_tokens"] = services.tokens.purge_expired()
        if isinstance(services.counter, SQLiteQuotaCounter):
            purged["rate_counters"] = services.counter.purge_expired()
        logger.info(f"Janitor sweep: {purged}")
        return purged

    def run_forever(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Janitor sweep failed")
            stop_event.wait(interval)


class WorkerGroup:
    """
    Runs loops on threads until SIGINT/SIGTERM.

    Args:
        targets: Callables taking the shared stop event
        on_stop: Cleanup run after every thread has exited
    """

    def __init__(self, name: str, targets: List[Callable[[threading.Event], None]], on_stop: Optional[Callable[[], None]] = None) -> None:
        self.name = name
        self.targets = targets
        self.on_stop = on_stop
        self.stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for index, target in enumerate(self.targets):
            thread = threading.Thread(target=target, args=(self.stop_event,), name=f"{self.name}-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} {self.name} threads")

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        if self.on_stop is not None:
            self.on_stop()
        logger.info(f"{self.name} worker group stopped")

    def run(self) -> None:
        def _request_stop(signum, _frame):
            logger.info(f"Received signal {signum}, shutting down {self.name} workers")
            self.stop_event.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)
        self.start()
        self.stop_event.wait()
        self.stop()


def build_render_pool(config) -> RenderPool:
    binary = config.render.binary
    timeout = float(config.render.timeout)
    return RenderPool(
        lambda: TypstContext(binary=binary, timeout=timeout),
        max_resources=int(config.pool.max_resources),
        acquire_timeout=float(config.pool.acquire_timeout),
        on_change=POOL_IN_USE.set,
    )


def build_worker_group(stage: str, services: Services, concurrency: Optional[int] = None) -> WorkerGroup:
    config = services.config
    if stage == "janitor":
        janitor = Janitor(services)
        interval = float(config.workers.janitor_interval)
        return WorkerGroup("janitor", [lambda stop_event: janitor.run_forever(stop_event, interval)])
    if stage not in ("generate", "sign", "deliver"):
        raise ValueError(f"Unknown stage '{stage}'")

    concurrency = concurrency or int(config.workers[stage])
    on_stop = None
    if stage == "generate":
        pool = build_render_pool(config)
        templates = TemplateStore(config.render.templates_dir or None)
        dispatcher = RenderDispatcher(pool, templates, acquire_timeout=float(config.pool.acquire_timeout))
        worker: StageWorker = GenerateWorker(services.store, services.queue, services.objects, dispatcher)
        grace = float(config.pool.shutdown_grace)
        on_stop = lambda: pool.destroy_all(grace)  # noqa: E731
    elif stage == "sign":
        worker = SignWorker(services.store, services.queue, services.objects)
    else:
        worker = DeliverWorker(services.store, services.queue, services.objects, url_ttl=int(config.storage.url_ttl))

    consumers = [build_consumer(worker, services) for _ in range(concurrency)]
    return WorkerGroup(stage, [consumer.run_forever for consumer in consumers], on_stop=on_stop)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="papyrus-worker", description="Run a Papyrus pipeline worker group")
    parser.add_argument("stage", choices=["generate", "sign", "deliver", "janitor"])
    parser.add_argument("--concurrency", type=int, default=None, help="Consumer threads (default: workers.<stage>)")
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    args = parser.parse_args(argv)

    config = load_config()
    configure_logging(config.logging.level)
    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be >= 1")

    if args.stage == "generate":
        try:
            logger.info(f"Render engine: {TypstContext.check_engine(config.render.binary)}")
        except TransientStageError as exc:
            logger.warning(f"{exc}; renders will be retried until it is installed")

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Serving metrics on :{args.metrics_port}")

    services = build_services(config)
    try:
        build_worker_group(args.stage, services, args.concurrency).run()
    finally:
        services.close()


if __name__ == "__main__":
    main()
