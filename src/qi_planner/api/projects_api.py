from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from qi_planner.api.security import enforce_write_auth, require_safe_project_id
from qi_planner.checkpoints.manager import CheckpointManager
from qi_planner.pipeline.advancement import can_advance
from qi_planner.pipeline.status import parse_stage, parse_status
from qi_planner.pipeline.validation import (
    current_stage,
    project_completion_percent,
    required_approvals,
    validate_all_stages,
    validate_stage,
)
from qi_planner.policies.resolve import load_checkpoint_policy
from qi_planner.projectstore.errors import (
    AuditWriteFailed,
    CheckpointInvalid,
    ProjectNotFound,
    VersionConflict,
)
from qi_planner.projectstore.store import FileProjectStore, default_project_root

router = APIRouter()

_DOMAIN_ERRORS = (ProjectNotFound, VersionConflict, AuditWriteFailed, ValueError)


def _store() -> FileProjectStore:
    return FileProjectStore(default_project_root())


def _manager() -> CheckpointManager:
    return CheckpointManager(_store(), policy=load_checkpoint_policy())


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ProjectNotFound):
        return HTTPException(status_code=404, detail="not found")
    if isinstance(e, (VersionConflict, CheckpointInvalid)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, AuditWriteFailed):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _stage_or_400(value: str):
    try:
        return parse_stage(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid stage") from None


async def _json_object(request: Request, *, what: str) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception:  # noqa: BLE001
        raise HTTPException(status_code=400, detail="invalid json") from None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail=f"{what} must be a json object")
    return payload


def _optional_object(body: dict[str, Any], key: str) -> dict[str, Any] | None:
    v = body.get(key)
    if v is not None and not isinstance(v, dict):
        raise HTTPException(status_code=400, detail=f"{key} must be a json object")
    return v


def _load(project_id: str):
    project_id = require_safe_project_id(project_id)
    try:
        return _store().get_project(project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="not found") from None


@router.post("/projects")
async def create_project(request: Request, actor: str = "system") -> dict[str, Any]:
    enforce_write_auth(request)
    body = await _json_object(request, what="project")
    intake = _optional_object(body, "intake")
    if intake is None:
        raise HTTPException(status_code=400, detail="missing intake")
    project_id = body.get("project_id")
    if project_id is not None:
        project_id = require_safe_project_id(project_id)
    try:
        project = _manager().create_project(
            intake,
            classification=_optional_object(body, "classification"),
            frameworks=_optional_object(body, "frameworks"),
            project_id=project_id,
            owner_id=body.get("owner_id"),
            actor=actor,
        )
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return {"project_id": project.project_id, "status": "created", "project": project.to_json_obj()}


@router.get("/projects")
def list_projects() -> dict[str, Any]:
    store = _store()
    out: list[dict[str, Any]] = []
    for pid in store.list_project_ids():
        try:
            p = store.get_project(pid)
        except (ProjectNotFound, ValueError):
            continue
        out.append(
            {
                "project_id": p.project_id,
                "status": p.status.value,
                "current_stage": current_stage(p).value,
                "title": (p.intake or {}).get("project_title"),
                "updated_at": p.updated_at,
            }
        )
    return {"projects": out}


@router.get("/projects/{project_id}")
def get_project(project_id: str) -> dict[str, Any]:
    p = _load(project_id)
    return {
        "project": p.to_json_obj(),
        "current_stage": current_stage(p).value,
        "completion_percent": project_completion_percent(p),
    }


@router.get("/projects/{project_id}/stages")
def get_stages(project_id: str) -> dict[str, Any]:
    p = _load(project_id)
    return {"project_id": p.project_id, "stages": [v.to_json_obj() for v in validate_all_stages(p)]}


@router.get("/projects/{project_id}/stages/{stage}")
def get_stage(project_id: str, stage: str) -> dict[str, Any]:
    st = _stage_or_400(stage)
    p = _load(project_id)
    return {"project_id": p.project_id, "validation": validate_stage(p, st).to_json_obj()}


@router.get("/projects/{project_id}/advance")
def get_advance(project_id: str, target: str) -> dict[str, Any]:
    st = _stage_or_400(target)
    p = _load(project_id)
    return {"project_id": p.project_id, **can_advance(p, st).to_json_obj()}


@router.get("/projects/{project_id}/approvals")
def get_approvals(project_id: str) -> dict[str, Any]:
    p = _load(project_id)
    return {"project_id": p.project_id, **required_approvals(p).to_json_obj()}


@router.post("/projects/{project_id}/stages/{stage}/complete")
async def complete_stage(request: Request, project_id: str, stage: str, actor: str = "system") -> dict[str, Any]:
    enforce_write_auth(request)
    project_id = require_safe_project_id(project_id)
    st = _stage_or_400(stage)
    body = await _json_object(request, what="stage completion")
    payload = _optional_object(body, "payload")
    if payload is None:
        raise HTTPException(status_code=400, detail="missing payload")
    try:
        entry = _manager().mark_stage_complete(
            project_id,
            st,
            payload,
            classification=_optional_object(body, "classification"),
            frameworks=_optional_object(body, "frameworks"),
            actor=actor,
        )
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return {"project_id": project_id, "status": "completed", "stage": st.value, "entry": entry.to_json_obj()}


@router.post("/projects/{project_id}/checkpoints/{suffix}")
def approve_checkpoint(request: Request, project_id: str, suffix: str, approver: str | None = None) -> dict[str, Any]:
    """Approval webhook: `suffix` is the per-stage webhook name from the checkpoint policy."""
    enforce_write_auth(request)
    project_id = require_safe_project_id(project_id)
    mgr = _manager()
    try:
        st = mgr.policy.stage_for_suffix(suffix)
    except ValueError:
        raise HTTPException(status_code=404, detail="unknown checkpoint") from None
    if not str(approver or "").strip():
        raise HTTPException(status_code=400, detail="missing approver")

    try:
        # Webhook redelivery of an already approved checkpoint is a noop.
        entry = mgr.approve(project_id, st, str(approver), idempotent=True)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    if entry is None:
        return {"project_id": project_id, "status": "noop", "stage": st.value}
    return {"project_id": project_id, "status": "approved", "stage": st.value, "entry": entry.to_json_obj()}


@router.post("/projects/{project_id}/reject")
def reject_checkpoint(
    request: Request, project_id: str, stage: str, reason: str | None = None, actor: str = "user"
) -> dict[str, Any]:
    enforce_write_auth(request)
    project_id = require_safe_project_id(project_id)
    st = _stage_or_400(stage)
    if not str(reason or "").strip():
        raise HTTPException(status_code=400, detail="missing reason")
    try:
        entry = _manager().reject(project_id, st, str(reason), actor=actor)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return {"project_id": project_id, "status": "rejected", "stage": st.value, "entry": entry.to_json_obj()}


@router.post("/projects/{project_id}/status")
def change_status(
    request: Request, project_id: str, status: str, actor: str | None = None, reason: str | None = None
) -> dict[str, Any]:
    enforce_write_auth(request)
    project_id = require_safe_project_id(project_id)
    if not str(actor or "").strip():
        raise HTTPException(status_code=400, detail="missing actor")
    try:
        target = parse_status(status)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid status") from None
    try:
        entry = _manager().change_status(project_id, target, actor=str(actor), reason=reason)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return {"project_id": project_id, "status": "changed", "entry": entry.to_json_obj()}


@router.get("/projects/{project_id}/audit")
def get_audit(project_id: str) -> dict[str, Any]:
    project_id = require_safe_project_id(project_id)
    try:
        entries = _store().load_audit(project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="not found") from None
    return {"project_id": project_id, "entries": [e.to_json_obj() for e in entries]}
