"""
Job state machine and the three pipeline steps.

    queued -> generating -> generated -> signing -> signed -> delivering -> completed

Any non-terminal stage may move to ``failed``. ``completed`` and ``failed``
are terminal. Re-writing the current stage is allowed so a redelivered
message can re-enter its in-progress stage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import JobStage

STAGE_ORDER = (
    JobStage.QUEUED,
    JobStage.GENERATING,
    JobStage.GENERATED,
    JobStage.SIGNING,
    JobStage.SIGNED,
    JobStage.DELIVERING,
    JobStage.COMPLETED,
)

TERMINAL_STAGES = frozenset({JobStage.COMPLETED, JobStage.FAILED})

GENERATE_QUEUE = "pdf-generate"
SIGN_QUEUE = "pdf-sign"
DELIVER_QUEUE = "pdf-deliver"


def is_terminal(stage: JobStage) -> bool:
    return JobStage(stage) in TERMINAL_STAGES


def stage_rank(stage: JobStage) -> int:
    """Position in the pipeline; ``failed`` ranks after everything else."""
    stage = JobStage(stage)
    if stage is JobStage.FAILED:
        return len(STAGE_ORDER)
    return STAGE_ORDER.index(stage)


def can_transition(current: JobStage, target: JobStage) -> bool:
    current, target = JobStage(current), JobStage(target)
    if current in TERMINAL_STAGES:
        return False
    if target is JobStage.FAILED or target is current:
        return True
    return stage_rank(target) == stage_rank(current) + 1


@dataclass(frozen=True)
class PipelineStep:
    name: str
    queue: str
    in_progress: JobStage
    done: JobStage
    next_queue: Optional[str]

    def dedupe_key(self, job_id: str) -> str:
        return f"{job_id}:{self.name}"


GENERATE = PipelineStep("generate", GENERATE_QUEUE, JobStage.GENERATING, JobStage.GENERATED, SIGN_QUEUE)
SIGN = PipelineStep("sign", SIGN_QUEUE, JobStage.SIGNING, JobStage.SIGNED, DELIVER_QUEUE)
DELIVER = PipelineStep("deliver", DELIVER_QUEUE, JobStage.DELIVERING, JobStage.COMPLETED, None)

STEPS_BY_QUEUE = {step.queue: step for step in (GENERATE, SIGN, DELIVER)}
