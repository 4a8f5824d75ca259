from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from qi_planner.pipeline.status import Checkpoints, PipelineStage, ProjectStatus, parse_status

PROJECT_SCHEMA_VERSION = "project_v1"

# Intake stage data is spread over three slots; later stages own one slot each.
PAYLOAD_SLOTS = ("intake", "classification", "frameworks", "research", "methodology", "ethics", "documents")

STAGE_SLOTS: dict[PipelineStage, str] = {
    PipelineStage.INTAKE: "intake",
    PipelineStage.RESEARCH: "research",
    PipelineStage.METHODOLOGY: "methodology",
    PipelineStage.ETHICS: "ethics",
    PipelineStage.DOCUMENTS: "documents",
}


def new_project_id() -> str:
    return str(uuid.uuid4())


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (dict, list, tuple, str)):
        return len(value) == 0 if not isinstance(value, str) else not value.strip()
    return False


@dataclass(frozen=True)
class Project:
    project_id: str
    status: ProjectStatus = ProjectStatus.DRAFT
    version: int = 0
    created_at: str = ""
    updated_at: str = ""
    intake: dict[str, Any] | None = None
    classification: dict[str, Any] | None = None
    frameworks: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    methodology: dict[str, Any] | None = None
    ethics: dict[str, Any] | None = None
    documents: dict[str, Any] | None = None
    checkpoints: Checkpoints = field(default_factory=Checkpoints)
    owner_id: str | None = None

    def stage_payload(self, stage: PipelineStage) -> dict[str, Any] | None:
        return getattr(self, STAGE_SLOTS[stage])

    def has_stage_payload(self, stage: PipelineStage) -> bool:
        return not _is_empty(self.stage_payload(stage))

    def to_json_obj(self) -> dict[str, Any]:
        obj: dict[str, Any] = {
            "schema_version": PROJECT_SCHEMA_VERSION,
            "project_id": self.project_id,
            "status": self.status.value,
            "version": int(self.version),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "checkpoints": self.checkpoints.to_json_obj(),
        }
        for slot in PAYLOAD_SLOTS:
            value = getattr(self, slot)
            if value is not None:
                obj[slot] = value
        if self.owner_id is not None:
            obj["owner_id"] = self.owner_id
        return obj

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> Project:
        if not isinstance(obj, dict):
            raise ValueError("project must be a JSON object")
        project_id = str(obj.get("project_id") or "").strip()
        if not project_id:
            raise ValueError("project missing project_id")
        slots: dict[str, Any] = {}
        for slot in PAYLOAD_SLOTS:
            value = obj.get(slot)
            slots[slot] = dict(value) if isinstance(value, dict) else None
        owner = obj.get("owner_id")
        return cls(
            project_id=project_id,
            status=parse_status(obj.get("status", ProjectStatus.DRAFT.value)),
            version=int(obj.get("version", 0) or 0),
            created_at=str(obj.get("created_at") or ""),
            updated_at=str(obj.get("updated_at") or ""),
            checkpoints=Checkpoints.from_json_obj(obj.get("checkpoints")),
            owner_id=str(owner) if owner else None,
            **slots,
        )


def attach_payload(project: Project, slot: str, payload: dict[str, Any]) -> Project:
    """Attach a payload slot. Slots only grow: an attached payload is never cleared."""
    if slot not in PAYLOAD_SLOTS:
        raise ValueError(f"unknown payload slot: {slot!r}")
    if not isinstance(payload, dict):
        raise ValueError(f"{slot} payload must be a JSON object")
    if _is_empty(payload) and not _is_empty(getattr(project, slot)):
        raise ValueError(f"{slot} payload cannot be removed once attached")
    return replace(project, **{slot: dict(payload)})


def attach_stage_payload(project: Project, stage: PipelineStage, payload: dict[str, Any]) -> Project:
    return attach_payload(project, STAGE_SLOTS[stage], payload)
