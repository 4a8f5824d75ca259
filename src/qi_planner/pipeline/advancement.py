from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from qi_planner.pipeline.project import Project
from qi_planner.pipeline.status import PIPELINE_STAGES, PipelineStage, ProjectStatus
from qi_planner.pipeline.validation import current_stage, validate_stage


@dataclass(frozen=True)
class AdvancementCheck:
    target_stage: PipelineStage
    current_stage: PipelineStage
    allowed: bool
    blockers: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "target_stage": self.target_stage.value,
            "current_stage": self.current_stage.value,
            "allowed": bool(self.allowed),
            "blockers": list(self.blockers),
            "prerequisites": list(self.prerequisites),
        }


def can_advance(project: Project, target_stage: PipelineStage) -> AdvancementCheck:
    """Decide whether `project` may move to `target_stage`.

    Disagreement is reported through `blockers`; this never raises for a
    backward target, missing data, a missing approval or an absorbing status.
    """
    cur = current_stage(project)
    if target_stage.position < cur.position:
        return AdvancementCheck(
            target_stage=target_stage,
            current_stage=cur,
            allowed=False,
            blockers=[f"Cannot go backward from '{cur.value}' to '{target_stage.value}'"],
        )

    blockers: list[str] = []
    prerequisites: list[str] = []
    for stage in PIPELINE_STAGES[: target_stage.position]:
        prerequisites.append(f"{stage.value} stage must be complete and approved")
        v = validate_stage(project, stage)
        if not v.data_complete:
            blockers.append(f"Stage '{stage.value}' is not complete. Missing: {', '.join(v.missing_fields)}")
        if not v.approved:
            blockers.append(f"Stage '{stage.value}' is not approved")

    if project.status == ProjectStatus.REVISION_REQUIRED:
        blockers.append("Project requires revision before advancing")
    if project.status == ProjectStatus.ARCHIVED:
        blockers.append("Archived projects cannot advance")

    return AdvancementCheck(
        target_stage=target_stage,
        current_stage=cur,
        allowed=not blockers,
        blockers=blockers,
        prerequisites=prerequisites,
    )
