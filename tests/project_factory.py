from __future__ import annotations

import copy
from typing import Any

from qi_planner.pipeline.project import Project
from qi_planner.pipeline.status import PIPELINE_STAGES, Checkpoints, PipelineStage, ProjectStatus

FIXED_TS = "2023-11-14T22:13:20+00:00"

INTAKE: dict[str, Any] = {
    "project_title": "Reducing inpatient falls on ward 7B",
    "project_type": "QI",
    "concept_description": "Bedside falls-risk huddle at every shift change.",
    "clinical_problem": "Falls rate above the hospital benchmark.",
    "target_population": "Adult medical inpatients",
    "setting": "Ward 7B",
    "principal_investigator": {"name": "Dr A. Example", "email": "a.example@health.example"},
    "co_investigators": [],
    "intended_outcomes": ["Falls per 1000 bed days"],
}
CLASSIFICATION: dict[str, Any] = {"project_type": "QI", "risk_level": "LOW", "confidence": 0.92}
FRAMEWORKS: dict[str, Any] = {"primary": "PDSA", "reporting": "SQUIRE"}

STAGE_PAYLOADS: dict[PipelineStage, dict[str, Any]] = {
    PipelineStage.INTAKE: INTAKE,
    PipelineStage.RESEARCH: {
        "search_strategy": {"databases": ["PubMed", "CINAHL"], "terms": ["falls", "huddle"]},
        "primary_literature": [{"pmid": "31234567", "title": "Safety huddles and falls"}],
        "gap_analysis": "No local evaluation of shift-change huddles.",
        "evidence_synthesis": "Huddles are associated with fewer falls.",
        "citations": ["Smith 2019"],
    },
    PipelineStage.METHODOLOGY: {
        "study_design": {"type": "PDSA", "cycles": 3},
        "participants": {"inclusion": ["adult inpatients"]},
        "outcomes": {"primary": "falls per 1000 bed days"},
        "procedures": ["huddle at 0700 and 1900"],
        "analysis_plan": {"method": "run chart"},
        "timeline": {"weeks": 12},
    },
    PipelineStage.ETHICS: {
        "ethics_pathway": {"pathway": "QI_REGISTRATION", "requires_rgo": False, "status": "PENDING"},
        "risk_assessment": {"level": "LOW"},
        "consent_requirements": {"waiver": True},
        "data_governance": {"storage": "hospital network drive"},
        "governance_checklist": [{"item_id": "INSTITUTIONAL_REGISTER", "status": "NOT_STARTED"}],
    },
    PipelineStage.DOCUMENTS: {
        "generated": [{"artifact_id": "PROTOCOL", "path": "protocol.docx"}],
        "metadata": {"generated_at": FIXED_TS},
    },
}


def make_project(
    status: ProjectStatus = ProjectStatus.DRAFT,
    *,
    through: PipelineStage | None = None,
    approved: tuple[PipelineStage, ...] = (),
    project_id: str = "p1",
    **overrides: Any,
) -> Project:
    """Project with payloads for every stage up to and including `through`."""
    slots: dict[str, Any] = {}
    if through is not None:
        for stage in PIPELINE_STAGES[: through.position + 1]:
            slots[stage.value] = copy.deepcopy(STAGE_PAYLOADS[stage])
        slots["classification"] = copy.deepcopy(CLASSIFICATION)
        slots["frameworks"] = copy.deepcopy(FRAMEWORKS)
    cps = Checkpoints()
    for stage in approved:
        cps = cps.with_stage(stage, True)
    slots.update(overrides)
    return Project(
        project_id=project_id,
        status=status,
        created_at=FIXED_TS,
        updated_at=FIXED_TS,
        checkpoints=cps,
        **slots,
    )
