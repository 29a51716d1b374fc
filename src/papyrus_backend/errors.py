"""
Exception hierarchy shared by the API layer and the stage workers.

Stage errors are split into two families so the retrying consumer can decide
what to do without inspecting messages:

- TransientStageError: infrastructure blips; the queue redelivers the message
  until the retry policy is exhausted.
- PermanentStageError: bad input; the job goes straight to ``failed``.

Any other exception reaching the consumer is treated as transient.
"""

from __future__ import annotations


class PapyrusError(Exception):
    """Base class for all Papyrus errors."""


class BackingStoreUnavailable(PapyrusError):
    """A shared store (quota counters, idempotency, status, queue) is unreachable."""

    def __init__(self, store: str, detail: str = "") -> None:
        self.store = store
        self.detail = detail
        message = f"{store} store unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class JobNotFound(PapyrusError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobNotReady(PapyrusError):
    def __init__(self, job_id: str, stage: str) -> None:
        self.job_id = job_id
        self.stage = stage
        super().__init__(f"Job '{job_id}' is not completed (current status: {stage})")


class IllegalTransition(PapyrusError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job '{job_id}' cannot move from '{current}' to '{target}'")


class StageError(PapyrusError):
    """Raised by stage handlers."""


class TransientStageError(StageError):
    pass


class PermanentStageError(StageError):
    pass


class PoolTimeoutError(TransientStageError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for a render context")


class PoolClosedError(TransientStageError):
    def __init__(self) -> None:
        super().__init__("Render pool is shutting down")


class UnsupportedDocumentType(PermanentStageError):
    def __init__(self, document_type: str) -> None:
        self.document_type = document_type
        super().__init__(f"Template '{document_type}' not found")


class RenderError(PermanentStageError):
    pass


class RenderTimeoutError(TransientStageError):
    pass


class RenderEngineUnavailable(TransientStageError):
    pass


class StorageError(TransientStageError):
    pass


class ArtifactMissing(PermanentStageError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Artifact '{key}' does not exist")
