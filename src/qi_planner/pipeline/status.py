from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class PipelineStage(str, Enum):
    INTAKE = "intake"
    RESEARCH = "research"
    METHODOLOGY = "methodology"
    ETHICS = "ethics"
    DOCUMENTS = "documents"

    @property
    def position(self) -> int:
        return PIPELINE_STAGES.index(self)


PIPELINE_STAGES: tuple[PipelineStage, ...] = tuple(PipelineStage)


class ProjectStatus(str, Enum):
    DRAFT = "DRAFT"
    INTAKE_COMPLETE = "INTAKE_COMPLETE"
    INTAKE_APPROVED = "INTAKE_APPROVED"
    RESEARCH_COMPLETE = "RESEARCH_COMPLETE"
    RESEARCH_APPROVED = "RESEARCH_APPROVED"
    METHODOLOGY_COMPLETE = "METHODOLOGY_COMPLETE"
    METHODOLOGY_APPROVED = "METHODOLOGY_APPROVED"
    ETHICS_COMPLETE = "ETHICS_COMPLETE"
    ETHICS_APPROVED = "ETHICS_APPROVED"
    DOCUMENTS_COMPLETE = "DOCUMENTS_COMPLETE"
    DOCUMENTS_APPROVED = "DOCUMENTS_APPROVED"
    SUBMITTED = "SUBMITTED"
    REVISION_REQUIRED = "REVISION_REQUIRED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


# Step within a stage: 0 started, 1 complete, 2 approved; documents continues with 3 submitted, 4 completed.
STEP_STARTED = 0
STEP_COMPLETE = 1
STEP_APPROVED = 2

_STATUS_POSITION: dict[ProjectStatus, tuple[int, int] | None] = {
    ProjectStatus.DRAFT: (0, STEP_STARTED),
    ProjectStatus.INTAKE_COMPLETE: (0, STEP_COMPLETE),
    ProjectStatus.INTAKE_APPROVED: (0, STEP_APPROVED),
    ProjectStatus.RESEARCH_COMPLETE: (1, STEP_COMPLETE),
    ProjectStatus.RESEARCH_APPROVED: (1, STEP_APPROVED),
    ProjectStatus.METHODOLOGY_COMPLETE: (2, STEP_COMPLETE),
    ProjectStatus.METHODOLOGY_APPROVED: (2, STEP_APPROVED),
    ProjectStatus.ETHICS_COMPLETE: (3, STEP_COMPLETE),
    ProjectStatus.ETHICS_APPROVED: (3, STEP_APPROVED),
    ProjectStatus.DOCUMENTS_COMPLETE: (4, STEP_COMPLETE),
    ProjectStatus.DOCUMENTS_APPROVED: (4, STEP_APPROVED),
    ProjectStatus.SUBMITTED: (4, 3),
    ProjectStatus.COMPLETED: (4, 4),
    ProjectStatus.REVISION_REQUIRED: None,
    ProjectStatus.ARCHIVED: None,
}

ABSORBING_STATUSES = frozenset({ProjectStatus.REVISION_REQUIRED, ProjectStatus.ARCHIVED})
TERMINAL_STATUSES = frozenset({ProjectStatus.COMPLETED, ProjectStatus.ARCHIVED})

_COMPLETE_STATUS: dict[PipelineStage, ProjectStatus] = {
    PipelineStage.INTAKE: ProjectStatus.INTAKE_COMPLETE,
    PipelineStage.RESEARCH: ProjectStatus.RESEARCH_COMPLETE,
    PipelineStage.METHODOLOGY: ProjectStatus.METHODOLOGY_COMPLETE,
    PipelineStage.ETHICS: ProjectStatus.ETHICS_COMPLETE,
    PipelineStage.DOCUMENTS: ProjectStatus.DOCUMENTS_COMPLETE,
}
_APPROVED_STATUS: dict[PipelineStage, ProjectStatus] = {
    PipelineStage.INTAKE: ProjectStatus.INTAKE_APPROVED,
    PipelineStage.RESEARCH: ProjectStatus.RESEARCH_APPROVED,
    PipelineStage.METHODOLOGY: ProjectStatus.METHODOLOGY_APPROVED,
    PipelineStage.ETHICS: ProjectStatus.ETHICS_APPROVED,
    PipelineStage.DOCUMENTS: ProjectStatus.DOCUMENTS_APPROVED,
}

# Stored checkpoint field names are part of the storage contract.
CHECKPOINT_FIELDS: dict[PipelineStage, str] = {
    PipelineStage.INTAKE: "intake_approved",
    PipelineStage.RESEARCH: "research_approved",
    PipelineStage.METHODOLOGY: "methodology_approved",
    PipelineStage.ETHICS: "ethics_approved",
    PipelineStage.DOCUMENTS: "documents_approved",
}

for _table in (_COMPLETE_STATUS, _APPROVED_STATUS, CHECKPOINT_FIELDS):
    if set(_table) != set(PipelineStage):
        raise RuntimeError("stage table is not exhaustive over PipelineStage")
if set(_STATUS_POSITION) != set(ProjectStatus):
    raise RuntimeError("status position table is not exhaustive over ProjectStatus")


def parse_stage(value: Any) -> PipelineStage:
    if isinstance(value, PipelineStage):
        return value
    s = str(value or "").strip().lower()
    try:
        return PipelineStage(s)
    except ValueError:
        raise ValueError(f"unknown pipeline stage: {value!r}") from None


def parse_status(value: Any) -> ProjectStatus:
    if isinstance(value, ProjectStatus):
        return value
    s = str(value or "").strip().upper()
    try:
        return ProjectStatus(s)
    except ValueError:
        raise ValueError(f"unknown project status: {value!r}") from None


def status_position(status: ProjectStatus) -> tuple[int, int] | None:
    """Return (stage_index, step) for a pipeline status, None for absorbing statuses."""
    return _STATUS_POSITION[status]


def stage_for_status(status: ProjectStatus) -> PipelineStage:
    """Stage a status belongs to. Absorbing statuses report intake."""
    pos = status_position(status)
    if pos is None:
        return PipelineStage.INTAKE
    return PIPELINE_STAGES[pos[0]]


def is_at_or_past(status: ProjectStatus, stage: PipelineStage) -> bool:
    """True when the status records `stage` as complete (or any later stage as started)."""
    pos = status_position(status)
    if pos is None:
        return False
    stage_idx, step = pos
    if stage_idx != stage.position:
        return stage_idx > stage.position
    return step >= STEP_COMPLETE


def stage_complete_status(stage: PipelineStage) -> ProjectStatus:
    return _COMPLETE_STATUS[stage]


def stage_approved_status(stage: PipelineStage) -> ProjectStatus:
    return _APPROVED_STATUS[stage]


def next_stage(stage: PipelineStage) -> PipelineStage | None:
    i = stage.position
    if i + 1 >= len(PIPELINE_STAGES):
        return None
    return PIPELINE_STAGES[i + 1]


def previous_stage(stage: PipelineStage) -> PipelineStage | None:
    i = stage.position
    if i == 0:
        return None
    return PIPELINE_STAGES[i - 1]


@dataclass(frozen=True)
class Checkpoints:
    intake_approved: bool = False
    research_approved: bool = False
    methodology_approved: bool = False
    ethics_approved: bool = False
    documents_approved: bool = False

    def get(self, stage: PipelineStage) -> bool:
        return bool(getattr(self, CHECKPOINT_FIELDS[stage]))

    def with_stage(self, stage: PipelineStage, approved: bool) -> Checkpoints:
        return replace(self, **{CHECKPOINT_FIELDS[stage]: bool(approved)})

    def to_json_obj(self) -> dict[str, bool]:
        return {CHECKPOINT_FIELDS[s]: self.get(s) for s in PIPELINE_STAGES}

    @classmethod
    def from_json_obj(cls, obj: Any) -> Checkpoints:
        if not isinstance(obj, dict):
            return cls()
        return cls(**{CHECKPOINT_FIELDS[s]: bool(obj.get(CHECKPOINT_FIELDS[s], False)) for s in PIPELINE_STAGES})
