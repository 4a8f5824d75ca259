from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from qi_planner.pipeline.project import Project
from qi_planner.pipeline.status import (
    PIPELINE_STAGES,
    PipelineStage,
    ProjectStatus,
    is_at_or_past,
    stage_for_status,
)


STAGE_REQUIREMENTS: dict[PipelineStage, tuple[str, ...]] = {
    PipelineStage.INTAKE: (
        "intake.project_title",
        "intake.project_type",
        "intake.concept_description",
        "intake.clinical_problem",
        "intake.target_population",
        "intake.setting",
        "intake.principal_investigator",
        "intake.co_investigators",
        "intake.intended_outcomes",
        "classification",
        "frameworks",
    ),
    PipelineStage.RESEARCH: (
        "research.search_strategy",
        "research.primary_literature",
        "research.gap_analysis",
        "research.evidence_synthesis",
        "research.citations",
    ),
    PipelineStage.METHODOLOGY: (
        "methodology.study_design",
        "methodology.participants",
        "methodology.outcomes",
        "methodology.procedures",
        "methodology.analysis_plan",
        "methodology.timeline",
    ),
    PipelineStage.ETHICS: (
        "ethics.ethics_pathway",
        "ethics.risk_assessment",
        "ethics.consent_requirements",
        "ethics.data_governance",
        "ethics.governance_checklist",
    ),
    PipelineStage.DOCUMENTS: (
        "documents.generated",
        "documents.metadata",
    ),
}

# Present-but-empty is acceptable for these paths (an empty list of co-investigators is valid).
OPTIONAL_WHEN_EMPTY = frozenset({"intake.co_investigators"})

if set(STAGE_REQUIREMENTS) != set(PipelineStage):
    raise RuntimeError("stage requirements are not exhaustive over PipelineStage")

_MISSING = object()


@dataclass(frozen=True)
class StageValidation:
    stage: PipelineStage
    data_complete: bool
    approved: bool
    missing_fields: list[str] = field(default_factory=list)
    completion_percent: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "data_complete": bool(self.data_complete),
            "approved": bool(self.approved),
            "missing_fields": list(self.missing_fields),
            "completion_percent": int(self.completion_percent),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class RequiredApprovals:
    approvals: list[str]
    pending: list[str]
    completed: list[str]

    def to_json_obj(self) -> dict[str, Any]:
        return {"approvals": list(self.approvals), "pending": list(self.pending), "completed": list(self.completed)}


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def resolve_path(project: Project, path: str) -> Any:
    """Resolve a dotted path against the project's payload slots; returns a sentinel when absent."""
    head, _, rest = path.partition(".")
    cur: Any = getattr(project, head, None)
    if rest:
        for key in rest.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return _MISSING
            cur = cur[key]
    return _MISSING if cur is None else cur


def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _missing_fields(project: Project, stage: PipelineStage) -> list[str]:
    missing: list[str] = []
    for path in STAGE_REQUIREMENTS[stage]:
        value = resolve_path(project, path)
        if value is _MISSING:
            missing.append(path)
        elif _is_blank(value) and path not in OPTIONAL_WHEN_EMPTY:
            missing.append(f"{path} (empty)")
    return missing


def current_stage(project: Project) -> PipelineStage:
    return stage_for_status(project.status)


def validate_stage(project: Project, stage: PipelineStage) -> StageValidation:
    reqs = STAGE_REQUIREMENTS[stage]
    missing = _missing_fields(project, stage)
    pct = round_half_up(100.0 * (len(reqs) - len(missing)) / len(reqs))

    # Completion is sticky: a status at or past the stage counts regardless of field presence.
    data_complete = (not missing) or is_at_or_past(project.status, stage)
    approved = project.checkpoints.get(stage)

    warnings: list[str] = []
    if data_complete and not approved:
        warnings.append(f"Stage '{stage.value}' is complete but awaiting approval")
    if 0 < pct < 100:
        warnings.append(f"Stage '{stage.value}' is {pct}% complete")

    return StageValidation(
        stage=stage,
        data_complete=data_complete,
        approved=approved,
        missing_fields=missing,
        completion_percent=pct,
        warnings=warnings,
    )


def validate_all_stages(project: Project) -> list[StageValidation]:
    """Validate every stage up to and including the current one."""
    cur = current_stage(project)
    return [validate_stage(project, s) for s in PIPELINE_STAGES[: cur.position + 1]]


def is_project_complete(project: Project) -> bool:
    for s in PIPELINE_STAGES:
        v = validate_stage(project, s)
        if not (v.data_complete and v.approved):
            return False
    return True


def project_completion_percent(project: Project) -> int:
    weight = 100.0 / len(PIPELINE_STAGES)
    total = sum(validate_stage(project, s).completion_percent / 100.0 * weight for s in PIPELINE_STAGES)
    return round_half_up(total)


def _ethics_pathway(project: Project) -> dict[str, Any] | None:
    ep = (project.ethics or {}).get("ethics_pathway")
    return ep if isinstance(ep, dict) else None


def _site_requirements(project: Project) -> list[dict[str, Any]]:
    sites = (project.ethics or {}).get("site_requirements")
    if not isinstance(sites, list):
        return []
    return [s for s in sites if isinstance(s, dict)]


def _approval_complete(project: Project, approval: str) -> bool:
    for s in PIPELINE_STAGES:
        if approval == f"{s.value}_approval":
            return project.checkpoints.get(s)
    ep = _ethics_pathway(project)
    if approval in ("hrec_approval", "rgo_approval"):
        return bool(ep) and str(ep.get("status") or "") == "APPROVED"
    if approval.startswith("site_approval_"):
        site_id = approval[len("site_approval_") :]
        for site in _site_requirements(project):
            if str(site.get("site_id")) == site_id:
                return str(site.get("status") or "") == "APPROVED"
        return False
    if approval == "grant_submission_approval":
        return project.status in (ProjectStatus.SUBMITTED, ProjectStatus.COMPLETED)
    return False


def required_approvals(project: Project) -> RequiredApprovals:
    cur = current_stage(project)
    approvals = [f"{s.value}_approval" for s in PIPELINE_STAGES[: cur.position + 1]]

    ep = _ethics_pathway(project)
    if cur.position >= PipelineStage.ETHICS.position and ep:
        if str(ep.get("pathway") or "") in ("FULL_HREC_REVIEW", "HYBRID_REVIEW"):
            approvals.append("hrec_approval")
        if ep.get("requires_rgo"):
            approvals.append("rgo_approval")
        for site in _site_requirements(project):
            if site.get("requires_local_approval"):
                approvals.append(f"site_approval_{site.get('site_id')}")

    if (project.intake or {}).get("grant_target"):
        approvals.append("grant_submission_approval")

    completed = [a for a in approvals if _approval_complete(project, a)]
    pending = [a for a in approvals if a not in completed]
    return RequiredApprovals(approvals=approvals, pending=pending, completed=completed)
