from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable

from qi_planner.pipeline.project import Project, attach_payload, attach_stage_payload, new_project_id
from qi_planner.pipeline.status import (
    TERMINAL_STATUSES,
    PipelineStage,
    ProjectStatus,
    parse_stage,
    parse_status,
    stage_approved_status,
    stage_complete_status,
    status_position,
)
from qi_planner.policies.resolve import CheckpointPolicy
from qi_planner.projectstore.errors import AuditWriteFailed, CheckpointInvalid, VersionConflict
from qi_planner.projectstore.store import AuditEntry, ProjectStore, new_audit_entry, new_recorded_at, project_state

logger = logging.getLogger(__name__)

# mutate(current) -> (updated, action, details), or None when there is nothing to write
Mutation = Callable[[Project], tuple[Project, str, dict[str, Any]] | None]


def _stage(value: Any) -> PipelineStage:
    try:
        return parse_stage(value)
    except ValueError as e:
        raise CheckpointInvalid(str(e)) from None


def _forward_status(current: ProjectStatus, target: ProjectStatus) -> ProjectStatus:
    """Move to `target` unless that is backwards or `current` is terminal."""
    if current in TERMINAL_STATUSES:
        return current
    cur_pos = status_position(current)
    if cur_pos is None:
        # REVISION_REQUIRED: a fresh completion or approval resolves it.
        return target
    tgt_pos = status_position(target)
    if tgt_pos is None or tgt_pos < cur_pos:
        return current
    return target


class CheckpointManager:
    """Applies human checkpoint decisions to stored projects.

    Every mutation is read, compute, then one store commit that compare-and-sets
    the project version and appends the audit entry together. A lost
    compare-and-set is retried from a fresh read; a failed audit write leaves the
    stored project untouched and is retried up to the policy limit before
    AuditWriteFailed is raised.
    """

    def __init__(self, store: ProjectStore, *, policy: CheckpointPolicy | None = None) -> None:
        self.store = store
        self.policy = policy or CheckpointPolicy()

    def _commit(self, project_id: str, mutate: Mutation, *, actor: str) -> AuditEntry | None:
        conflicts = 0
        audit_failures = 0
        attempts = self.policy.audit_write_retries + 1
        while True:
            current = self.store.get_project(project_id)
            outcome = mutate(current)
            if outcome is None:
                return None
            updated, action, details = outcome
            updated = replace(updated, updated_at=new_recorded_at())
            entry = new_audit_entry(
                project_id=project_id,
                action=action,
                actor=actor,
                details=details,
                previous_state=project_state(current),
                new_state=project_state(updated),
            )
            try:
                stored = self.store.commit(updated, expected_version=current.version, entry=entry)
            except VersionConflict:
                conflicts += 1
                if conflicts > self.policy.max_cas_retries:
                    logger.warning("giving up on %s after %d version conflicts", project_id, conflicts)
                    raise
                logger.warning(
                    "version conflict on %s (%d/%d); re-reading",
                    project_id,
                    conflicts,
                    self.policy.max_cas_retries,
                )
                continue
            except AuditWriteFailed as e:
                audit_failures += 1
                logger.warning(
                    "audit append failed for %s (%s, attempt %d/%d): %s",
                    project_id,
                    action,
                    audit_failures,
                    attempts,
                    e,
                )
                if audit_failures >= attempts:
                    raise AuditWriteFailed(
                        f"audit write failed for {project_id}; status change not applied"
                    ) from e
                continue

            logger.info(
                "%s %s by %s: %s -> %s (version %d)",
                action,
                project_id,
                actor,
                current.status.value,
                stored.status.value,
                stored.version,
            )
            return entry

    def approve(
        self, project_id: str, stage: PipelineStage | str, approver: str, *, idempotent: bool = False
    ) -> AuditEntry | None:
        """Approve a stage checkpoint.

        With `idempotent=True` an already approved checkpoint is left alone and
        None is returned; the check runs on the same read the commit is based on.
        """
        st = _stage(stage)
        approver = str(approver or "").strip()
        if not approver:
            raise CheckpointInvalid("approver must be non-empty")

        def mutate(p: Project) -> tuple[Project, str, dict[str, Any]] | None:
            if idempotent and p.checkpoints.get(st):
                return None
            if not p.has_stage_payload(st):
                raise CheckpointInvalid(f"cannot approve '{st.value}': stage payload is empty")
            cps = p.checkpoints.with_stage(st, True)
            new_status = _forward_status(p.status, stage_approved_status(st))
            details = {"stage": st.value, "approver": approver, "checkpoints": cps.to_json_obj()}
            return replace(p, checkpoints=cps, status=new_status), "CHECKPOINT_APPROVED", details

        return self._commit(project_id, mutate, actor=approver)

    def reject(self, project_id: str, stage: PipelineStage | str, reason: str, *, actor: str = "user") -> AuditEntry:
        st = _stage(stage)
        reason = str(reason or "").strip()
        if not reason:
            raise CheckpointInvalid("rejection reason must be non-empty")
        actor = str(actor or "").strip() or "user"

        def mutate(p: Project) -> tuple[Project, str, dict[str, Any]]:
            if p.status in TERMINAL_STATUSES:
                raise CheckpointInvalid(f"cannot reject '{st.value}' on a {p.status.value} project")
            cps = p.checkpoints.with_stage(st, False)
            details = {"stage": st.value, "reason": reason, "checkpoints": cps.to_json_obj()}
            return replace(p, checkpoints=cps, status=ProjectStatus.REVISION_REQUIRED), "CHECKPOINT_REJECTED", details

        return self._commit(project_id, mutate, actor=actor)

    def mark_stage_complete(
        self,
        project_id: str,
        stage: PipelineStage | str,
        payload: dict[str, Any],
        *,
        classification: dict[str, Any] | None = None,
        frameworks: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> AuditEntry:
        st = _stage(stage)
        if not isinstance(payload, dict) or not payload:
            raise CheckpointInvalid(f"'{st.value}' payload must be a non-empty JSON object")
        if st != PipelineStage.INTAKE and (classification is not None or frameworks is not None):
            raise CheckpointInvalid("classification and frameworks belong to the intake stage")

        def mutate(p: Project) -> tuple[Project, str, dict[str, Any]]:
            try:
                q = attach_stage_payload(p, st, payload)
                if classification is not None:
                    q = attach_payload(q, "classification", classification)
                if frameworks is not None:
                    q = attach_payload(q, "frameworks", frameworks)
            except ValueError as e:
                raise CheckpointInvalid(str(e)) from None
            new_status = _forward_status(p.status, stage_complete_status(st))
            details = {"stage": st.value, "fields": sorted(payload)}
            return replace(q, status=new_status), "STAGE_COMPLETED", details

        return self._commit(project_id, mutate, actor=actor)

    def change_status(
        self, project_id: str, status: ProjectStatus | str, *, actor: str, reason: str | None = None
    ) -> AuditEntry:
        """Out-of-band status change (resolving a revision, submission, archiving)."""
        try:
            target = parse_status(status)
        except ValueError as e:
            raise CheckpointInvalid(str(e)) from None
        actor = str(actor or "").strip()
        if not actor:
            raise CheckpointInvalid("actor must be non-empty")

        def mutate(p: Project) -> tuple[Project, str, dict[str, Any]]:
            if p.status in TERMINAL_STATUSES:
                raise CheckpointInvalid(f"{p.status.value} is terminal")
            details: dict[str, Any] = {"from": p.status.value, "to": target.value}
            if reason:
                details["reason"] = str(reason)
            return replace(p, status=target), "STATUS_CHANGED", details

        return self._commit(project_id, mutate, actor=actor)

    def create_project(
        self,
        intake: dict[str, Any],
        *,
        classification: dict[str, Any] | None = None,
        frameworks: dict[str, Any] | None = None,
        project_id: str | None = None,
        owner_id: str | None = None,
        actor: str = "system",
    ) -> Project:
        if not isinstance(intake, dict):
            raise CheckpointInvalid("intake must be a JSON object")
        now = new_recorded_at()
        project = Project(
            project_id=project_id or new_project_id(),
            status=ProjectStatus.DRAFT,
            created_at=now,
            updated_at=now,
            intake=dict(intake),
            classification=dict(classification) if classification is not None else None,
            frameworks=dict(frameworks) if frameworks is not None else None,
            owner_id=owner_id,
        )
        entry = new_audit_entry(
            project_id=project.project_id,
            action="PROJECT_CREATED",
            actor=actor,
            details={"fields": sorted(intake)},
            previous_state=None,
            new_state=project_state(project),
        )
        attempts = self.policy.audit_write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                stored = self.store.commit(project, expected_version=None, entry=entry)
                break
            except AuditWriteFailed as e:
                logger.warning(
                    "audit append failed for new project %s (attempt %d/%d): %s", project.project_id, attempt, attempts, e
                )
                if attempt == attempts:
                    raise AuditWriteFailed(f"audit write failed for new project {project.project_id}; not created") from e
        logger.info("PROJECT_CREATED %s by %s", stored.project_id, actor)
        return stored

    def checkpoint_status(self, project_id: str, stage: PipelineStage | str) -> dict[str, Any]:
        st = _stage(stage)
        p = self.store.get_project(project_id)
        return {
            "project_id": p.project_id,
            "stage": st.value,
            "approved": p.checkpoints.get(st),
            "has_payload": p.has_stage_payload(st),
            "status": p.status.value,
            "webhook_suffix": self.policy.webhook_suffixes[st],
        }
