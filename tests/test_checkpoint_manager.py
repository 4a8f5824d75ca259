from __future__ import annotations

import logging
import random
from dataclasses import replace

import pytest

from project_factory import CLASSIFICATION, FRAMEWORKS, INTAKE, STAGE_PAYLOADS, make_project
from qi_planner.checkpoints.manager import CheckpointManager
from qi_planner.pipeline.advancement import can_advance
from qi_planner.pipeline.status import PIPELINE_STAGES, PipelineStage, ProjectStatus
from qi_planner.pipeline.validation import current_stage
from qi_planner.policies.resolve import CheckpointPolicy
from qi_planner.projectstore.errors import AuditWriteFailed, CheckpointInvalid, ProjectNotFound, VersionConflict
from qi_planner.projectstore.store import InMemoryProjectStore


class RacingStore(InMemoryProjectStore):
    """Lets another writer bump the version right before each of the next `races` commits."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races
        self.conflicts = 0

    def commit(self, project, *, expected_version, entry):
        if expected_version is not None and self.races > 0:
            self.races -= 1
            cur = self.get_project(project.project_id)
            super().put_project(replace(cur, owner_id="concurrent-writer"), expected_version=cur.version)
        try:
            return super().commit(project, expected_version=expected_version, entry=entry)
        except VersionConflict:
            self.conflicts += 1
            raise


class FailingAuditStore(InMemoryProjectStore):
    def __init__(self, failures: int, *, actions: tuple[str, ...] | None = None) -> None:
        super().__init__()
        self.failures = failures
        self.actions = actions
        self.audit_calls = 0

    def _write_audit(self, project_id, obj) -> None:
        if self.actions is None or obj["action"] in self.actions:
            self.audit_calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise OSError("audit volume unavailable")
        super()._write_audit(project_id, obj)


def _seed(store, project):
    return store.put_project(project, expected_version=None)


def test_create_complete_and_approve_intake(monkeypatch) -> None:
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1700000000")
    store = InMemoryProjectStore()
    mgr = CheckpointManager(store)

    p = mgr.create_project({"project_title": "Falls huddle"}, project_id="qi-1", owner_id="u-7")
    assert p.status == ProjectStatus.DRAFT
    assert p.version == 1
    assert p.created_at == "2023-11-14T22:13:20+00:00"

    entry = mgr.mark_stage_complete("qi-1", "intake", INTAKE, classification=CLASSIFICATION, frameworks=FRAMEWORKS)
    assert entry.action == "STAGE_COMPLETED"
    assert entry.previous_state["status"] == "DRAFT"
    assert entry.new_state["status"] == "INTAKE_COMPLETE"

    entry = mgr.approve("qi-1", PipelineStage.INTAKE, "dr.lead")
    assert entry.action == "CHECKPOINT_APPROVED"
    assert entry.actor == "dr.lead"
    assert entry.details["checkpoints"]["intake_approved"] is True
    assert entry.new_state == {
        "status": "INTAKE_APPROVED",
        "checkpoints": {
            "intake_approved": True,
            "research_approved": False,
            "methodology_approved": False,
            "ethics_approved": False,
            "documents_approved": False,
        },
    }

    stored = store.get_project("qi-1")
    assert stored.status == ProjectStatus.INTAKE_APPROVED
    assert stored.owner_id == "u-7"
    assert stored.version == 3
    assert [e.action for e in store.load_audit("qi-1")] == ["PROJECT_CREATED", "STAGE_COMPLETED", "CHECKPOINT_APPROVED"]
    assert can_advance(stored, PipelineStage.RESEARCH).allowed


def test_approve_requires_stage_payload() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.INTAKE_APPROVED, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store)
    with pytest.raises(CheckpointInvalid, match="stage payload is empty"):
        mgr.approve("p1", PipelineStage.RESEARCH, "dr.lead")
    with pytest.raises(CheckpointInvalid):
        mgr.approve("p1", PipelineStage.INTAKE, "  ")
    with pytest.raises(CheckpointInvalid, match="unknown pipeline stage"):
        mgr.approve("p1", "review", "dr.lead")
    stored = store.get_project("p1")
    assert stored.version == 1
    assert not stored.checkpoints.get(PipelineStage.RESEARCH)
    assert store.load_audit("p1") == []


def test_unknown_project_raises_not_found() -> None:
    mgr = CheckpointManager(InMemoryProjectStore())
    with pytest.raises(ProjectNotFound):
        mgr.approve("missing", PipelineStage.INTAKE, "dr.lead")
    with pytest.raises(ProjectNotFound):
        mgr.reject("missing", PipelineStage.INTAKE, "no")


def test_full_walk_reaches_documents_approved() -> None:
    store = InMemoryProjectStore()
    mgr = CheckpointManager(store)
    mgr.create_project(INTAKE, classification=CLASSIFICATION, frameworks=FRAMEWORKS, project_id="walk")
    seen = []
    for stage in PIPELINE_STAGES:
        mgr.mark_stage_complete("walk", stage, STAGE_PAYLOADS[stage])
        assert can_advance(store.get_project("walk"), stage).allowed
        mgr.approve("walk", stage, "approver")
        seen.append(current_stage(store.get_project("walk")).position)
    assert seen == sorted(seen)
    final = store.get_project("walk")
    assert final.status == ProjectStatus.DOCUMENTS_APPROVED
    assert all(final.checkpoints.get(s) for s in PIPELINE_STAGES)
    assert len(store.load_audit("walk")) == 1 + 2 * len(PIPELINE_STAGES)


def test_current_stage_never_decreases_across_approvals() -> None:
    rng = random.Random(11)
    for trial in range(25):
        store = InMemoryProjectStore()
        start = rng.choice([s for s in ProjectStatus if s not in (ProjectStatus.COMPLETED, ProjectStatus.ARCHIVED)])
        _seed(store, make_project(start, through=PipelineStage.DOCUMENTS, project_id=f"t{trial}"))
        mgr = CheckpointManager(store)
        stages = list(PIPELINE_STAGES) * 2
        rng.shuffle(stages)
        last = None
        for stage in stages:
            mgr.approve(f"t{trial}", stage, "approver")
            pos = current_stage(store.get_project(f"t{trial}")).position
            if last is not None:
                assert pos >= last
            last = pos


def test_approving_an_earlier_stage_keeps_later_status() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.RESEARCH_COMPLETE, through=PipelineStage.RESEARCH))
    CheckpointManager(store).approve("p1", PipelineStage.INTAKE, "dr.lead")
    stored = store.get_project("p1")
    assert stored.status == ProjectStatus.RESEARCH_COMPLETE
    assert stored.checkpoints.get(PipelineStage.INTAKE)


def test_reject_ethics_requires_revision() -> None:
    store = InMemoryProjectStore()
    approved = (PipelineStage.INTAKE, PipelineStage.RESEARCH, PipelineStage.METHODOLOGY, PipelineStage.ETHICS)
    _seed(store, make_project(ProjectStatus.ETHICS_COMPLETE, through=PipelineStage.ETHICS, approved=approved))
    mgr = CheckpointManager(store)

    entry = mgr.reject("p1", PipelineStage.ETHICS, "insufficient risk detail")
    stored = store.get_project("p1")
    assert stored.status == ProjectStatus.REVISION_REQUIRED
    assert stored.checkpoints.ethics_approved is False
    assert stored.checkpoints.methodology_approved is True

    audit = store.load_audit("p1")
    assert len(audit) == 1
    assert audit[0].action == "CHECKPOINT_REJECTED"
    assert audit[0].actor == "user"
    assert audit[0].details["reason"] == "insufficient risk detail"
    assert audit[0].previous_state["status"] == "ETHICS_COMPLETE"
    assert audit[0] == entry

    check = can_advance(stored, PipelineStage.DOCUMENTS)
    assert not check.allowed
    assert "Project requires revision before advancing" in check.blockers

    # Re-completing the stage resolves the revision.
    mgr.mark_stage_complete("p1", PipelineStage.ETHICS, dict(STAGE_PAYLOADS[PipelineStage.ETHICS], revised=True))
    assert store.get_project("p1").status == ProjectStatus.ETHICS_COMPLETE


def test_reject_requires_reason_and_non_terminal_project() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.COMPLETED, through=PipelineStage.DOCUMENTS))
    mgr = CheckpointManager(store)
    with pytest.raises(CheckpointInvalid, match="reason"):
        mgr.reject("p1", PipelineStage.ETHICS, "   ")
    with pytest.raises(CheckpointInvalid, match="COMPLETED"):
        mgr.reject("p1", PipelineStage.ETHICS, "late objection")
    mgr.approve("p1", PipelineStage.DOCUMENTS, "dr.lead")
    assert store.get_project("p1").status == ProjectStatus.COMPLETED


def test_change_status_is_audited() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.REVISION_REQUIRED, through=PipelineStage.ETHICS))
    mgr = CheckpointManager(store)
    entry = mgr.change_status("p1", "ethics_complete", actor="coordinator", reason="risk section rewritten")
    assert entry.action == "STATUS_CHANGED"
    assert entry.details == {"from": "REVISION_REQUIRED", "to": "ETHICS_COMPLETE", "reason": "risk section rewritten"}
    mgr.change_status("p1", ProjectStatus.ARCHIVED, actor="coordinator")
    with pytest.raises(CheckpointInvalid, match="terminal"):
        mgr.change_status("p1", ProjectStatus.DRAFT, actor="coordinator")
    with pytest.raises(CheckpointInvalid):
        mgr.change_status("p1", "PAUSED", actor="coordinator")
    assert [e.action for e in store.load_audit("p1")] == ["STATUS_CHANGED", "STATUS_CHANGED"]


def test_mark_stage_complete_preconditions() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.INTAKE_APPROVED, through=PipelineStage.RESEARCH))
    mgr = CheckpointManager(store)
    with pytest.raises(CheckpointInvalid, match="non-empty"):
        mgr.mark_stage_complete("p1", PipelineStage.METHODOLOGY, {})
    with pytest.raises(CheckpointInvalid, match="intake stage"):
        mgr.mark_stage_complete("p1", PipelineStage.RESEARCH, {"a": 1}, classification={"project_type": "QI"})


def test_checkpoint_status_reports_webhook_suffix() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(through=PipelineStage.METHODOLOGY, approved=(PipelineStage.METHODOLOGY,)))
    st = CheckpointManager(store).checkpoint_status("p1", "methodology")
    assert st == {
        "project_id": "p1",
        "stage": "methodology",
        "approved": True,
        "has_payload": True,
        "status": "DRAFT",
        "webhook_suffix": "methods-approved",
    }


def test_version_conflict_is_retried_from_a_fresh_read(caplog) -> None:
    store = RacingStore(races=1)
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store, policy=CheckpointPolicy(max_cas_retries=3))

    with caplog.at_level(logging.WARNING, logger="qi_planner.checkpoints.manager"):
        mgr.approve("p1", PipelineStage.INTAKE, "dr.lead")

    assert store.conflicts == 1
    stored = store.get_project("p1")
    assert stored.version == 3
    assert stored.owner_id == "concurrent-writer"
    assert stored.status == ProjectStatus.INTAKE_APPROVED
    assert [e.action for e in store.load_audit("p1")] == ["CHECKPOINT_APPROVED"]
    assert any("version conflict" in r.getMessage() for r in caplog.records)


def test_version_conflict_gives_up_after_policy_retries() -> None:
    store = RacingStore(races=100)
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store, policy=CheckpointPolicy(max_cas_retries=2))
    with pytest.raises(VersionConflict):
        mgr.approve("p1", PipelineStage.INTAKE, "dr.lead")
    assert store.conflicts == 3
    assert store.load_audit("p1") == []
    assert not store.get_project("p1").checkpoints.intake_approved


def test_audit_failure_leaves_the_project_untouched(caplog) -> None:
    store = FailingAuditStore(failures=100)
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store, policy=CheckpointPolicy(audit_write_retries=2))

    with caplog.at_level(logging.WARNING, logger="qi_planner.checkpoints.manager"):
        with pytest.raises(AuditWriteFailed, match="not applied"):
            mgr.approve("p1", PipelineStage.INTAKE, "dr.lead")

    assert store.audit_calls == 3
    stored = store.get_project("p1")
    assert stored.status == ProjectStatus.INTAKE_COMPLETE
    assert not stored.checkpoints.intake_approved
    assert stored.version == 1
    assert store.load_audit("p1") == []
    assert sum("audit append failed" in r.getMessage() for r in caplog.records) == 3


def test_audit_failure_with_a_concurrent_writer_keeps_only_audited_changes() -> None:
    store = FailingAuditStore(failures=100, actions=("CHECKPOINT_APPROVED",))
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.RESEARCH))
    mgr = CheckpointManager(store, policy=CheckpointPolicy(audit_write_retries=0))
    other = CheckpointManager(store)

    original_commit = store.commit
    raced = []

    def commit_after_other_writer(project, *, expected_version, entry):
        if not raced:
            raced.append(True)
            other.mark_stage_complete("p1", PipelineStage.RESEARCH, STAGE_PAYLOADS[PipelineStage.RESEARCH])
        return original_commit(project, expected_version=expected_version, entry=entry)

    store.commit = commit_after_other_writer

    with pytest.raises(AuditWriteFailed):
        mgr.approve("p1", PipelineStage.INTAKE, "dr.lead")

    stored = store.get_project("p1")
    assert stored.status == ProjectStatus.RESEARCH_COMPLETE
    assert not stored.checkpoints.intake_approved
    entries = store.load_audit("p1")
    assert [e.action for e in entries] == ["STAGE_COMPLETED"]
    # Every stored change since the seed carries its audit entry.
    assert entries[-1].new_state == {"status": stored.status.value, "checkpoints": stored.checkpoints.to_json_obj()}
    assert stored.version == 2


def test_transient_audit_failure_is_retried() -> None:
    store = FailingAuditStore(failures=1)
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    CheckpointManager(store).reject("p1", PipelineStage.INTAKE, "title too vague", actor="dr.lead")
    assert store.audit_calls == 2
    stored = store.get_project("p1")
    assert stored.status == ProjectStatus.REVISION_REQUIRED
    assert stored.version == 2
    assert [e.actor for e in store.load_audit("p1")] == ["dr.lead"]


def test_create_project_audit_failure_creates_nothing() -> None:
    store = FailingAuditStore(failures=100)
    mgr = CheckpointManager(store, policy=CheckpointPolicy(audit_write_retries=0))
    with pytest.raises(AuditWriteFailed, match="not created"):
        mgr.create_project({"project_title": "x"}, project_id="p9")
    assert store.audit_calls == 1
    with pytest.raises(ProjectNotFound):
        store.get_project("p9")
    assert store.list_project_ids() == []


def test_idempotent_approve_writes_once() -> None:
    store = InMemoryProjectStore()
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store)

    assert mgr.approve("p1", PipelineStage.INTAKE, "dr.lead", idempotent=True) is not None
    assert mgr.approve("p1", PipelineStage.INTAKE, "dr.lead", idempotent=True) is None
    assert [e.action for e in store.load_audit("p1")] == ["CHECKPOINT_APPROVED"]
    assert store.get_project("p1").version == 2


def test_idempotent_approve_decides_on_the_committed_read() -> None:
    # A second delivery approves the same checkpoint between our read and our commit.
    store = RacingStore(races=0)
    _seed(store, make_project(ProjectStatus.INTAKE_COMPLETE, through=PipelineStage.INTAKE))
    mgr = CheckpointManager(store)
    other = CheckpointManager(store)

    original_commit = store.commit
    raced = []

    def commit_after_other_delivery(project, *, expected_version, entry):
        if not raced:
            raced.append(True)
            other.approve("p1", PipelineStage.INTAKE, "dr.lead", idempotent=True)
        return original_commit(project, expected_version=expected_version, entry=entry)

    store.commit = commit_after_other_delivery

    assert mgr.approve("p1", PipelineStage.INTAKE, "dr.lead", idempotent=True) is None
    assert store.conflicts == 1
    assert [e.action for e in store.load_audit("p1")] == ["CHECKPOINT_APPROVED"]
