from __future__ import annotations


class ProjectNotFound(LookupError):
    """Referenced project id does not exist."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"project not found: {project_id}")
        self.project_id = project_id


class VersionConflict(RuntimeError):
    """Compare-and-set on the project version lost against another writer."""

    def __init__(self, project_id: str, *, expected: int | None, actual: int | None) -> None:
        super().__init__(f"version conflict for {project_id}: expected={expected!r} actual={actual!r}")
        self.project_id = project_id
        self.expected = expected
        self.actual = actual


class AuditWriteFailed(RuntimeError):
    """Audit entry could not be persisted; the status change was not kept."""


class CheckpointInvalid(ValueError):
    """Checkpoint request violates a precondition (unknown stage, empty stage payload)."""


class ContractInvalid(ValueError):
    """Payload failed its JSON contract."""
