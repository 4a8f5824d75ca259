from __future__ import annotations

import copy
import fcntl
import json
import os
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from qi_planner.contracts import validate as contracts_validate
from qi_planner.pipeline.project import Project
from qi_planner.projectstore.errors import AuditWriteFailed, ContractInvalid, ProjectNotFound, VersionConflict

AUDIT_SCHEMA_VERSION = "audit_entry_v1"

AUDIT_ACTIONS = (
    "PROJECT_CREATED",
    "STAGE_COMPLETED",
    "CHECKPOINT_APPROVED",
    "CHECKPOINT_REJECTED",
    "STATUS_CHANGED",
)

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def _utc_now_iso() -> str:
    sde = os.getenv("SOURCE_DATE_EPOCH")
    if sde and sde.isdigit():
        return datetime.fromtimestamp(int(sde), tz=timezone.utc).isoformat()
    return datetime.now(tz=timezone.utc).isoformat()


def new_recorded_at() -> str:
    return _utc_now_iso()


def default_project_root(*, artifact_root: Path | None = None) -> Path:
    pr = os.getenv("QIP_PROJECT_ROOT")
    if pr and pr.strip():
        return Path(pr)
    ar = artifact_root or Path(os.getenv("QIP_ARTIFACT_ROOT", "/artifacts"))
    return Path(ar) / "projects"


def is_valid_project_id(project_id: str) -> bool:
    return bool(_PROJECT_ID_RE.match(str(project_id or "")))


def _require_project_id(project_id: str) -> str:
    if not is_valid_project_id(project_id):
        raise ValueError(f"invalid project_id: {project_id!r}")
    return str(project_id)


def _write_json_atomic(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / (path.name + ".tmp")
    tmp.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _jsonl_append(path: Path, obj: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def iter_jsonl(path: Path) -> Iterable[dict[str, Any]]:
    if not path.is_file():
        return []
    out: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            doc = json.loads(ln)
            if isinstance(doc, dict):
                out.append(doc)
    return out


def project_state(project: Project) -> dict[str, Any]:
    """Status and checkpoint snapshot recorded on audit entries."""
    return {"status": project.status.value, "checkpoints": project.checkpoints.to_json_obj()}


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    project_id: str
    action: str
    actor: str
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)
    previous_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "schema_version": AUDIT_SCHEMA_VERSION,
            "entry_id": self.entry_id,
            "project_id": self.project_id,
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "details": copy.deepcopy(self.details),
            "previous_state": copy.deepcopy(self.previous_state),
            "new_state": copy.deepcopy(self.new_state),
        }

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> AuditEntry:
        return cls(
            entry_id=str(obj["entry_id"]),
            project_id=str(obj["project_id"]),
            action=str(obj["action"]),
            actor=str(obj["actor"]),
            timestamp=str(obj["timestamp"]),
            details=dict(obj.get("details") or {}),
            previous_state=obj.get("previous_state"),
            new_state=obj.get("new_state"),
        )


def new_audit_entry(
    *,
    project_id: str,
    action: str,
    actor: str,
    details: dict[str, Any] | None = None,
    previous_state: dict[str, Any] | None = None,
    new_state: dict[str, Any] | None = None,
) -> AuditEntry:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"unknown audit action: {action!r}")
    return AuditEntry(
        entry_id=str(uuid.uuid4()),
        project_id=str(project_id),
        action=action,
        actor=str(actor),
        timestamp=new_recorded_at(),
        details=dict(details or {}),
        previous_state=previous_state,
        new_state=new_state,
    )


def _check_contract(obj: dict[str, Any], label: str) -> None:
    code, msg = contracts_validate.validate_payload(obj)
    if code != contracts_validate.EXIT_OK:
        raise ContractInvalid(f"invalid {label}: {msg}")


def _checked_entry(entry: AuditEntry, project_id: str) -> dict[str, Any]:
    if entry.project_id != project_id:
        raise ValueError(f"audit entry for {entry.project_id!r} cannot commit project {project_id!r}")
    obj = entry.to_json_obj()
    _check_contract(obj, AUDIT_SCHEMA_VERSION)
    return obj


class ProjectStore(Protocol):
    def get_project(self, project_id: str) -> Project: ...

    def put_project(self, project: Project, *, expected_version: int | None) -> Project: ...

    def append_audit(self, entry: AuditEntry) -> None: ...

    def commit(self, project: Project, *, expected_version: int | None, entry: AuditEntry) -> Project: ...

    def load_audit(self, project_id: str) -> list[AuditEntry]: ...

    def list_project_ids(self) -> list[str]: ...


def _next_version(project_id: str, stored: int | None, expected: int | None) -> int:
    """CAS check: creation requires no stored record, updates require the stored version to match."""
    if expected is None:
        if stored is not None:
            raise VersionConflict(project_id, expected=None, actual=stored)
        return 1
    if stored is None:
        raise ProjectNotFound(project_id)
    if stored != expected:
        raise VersionConflict(project_id, expected=expected, actual=stored)
    return expected + 1


class InMemoryProjectStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._projects: dict[str, dict[str, Any]] = {}
        self._audit: dict[str, list[dict[str, Any]]] = {}

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            obj = self._projects.get(project_id)
            if obj is None:
                raise ProjectNotFound(project_id)
            return Project.from_json_obj(copy.deepcopy(obj))

    def put_project(self, project: Project, *, expected_version: int | None) -> Project:
        pid = _require_project_id(project.project_id)
        with self._lock:
            cur = self._projects.get(pid)
            version = _next_version(pid, int(cur["version"]) if cur is not None else None, expected_version)
            stored = replace(project, version=version)
            obj = stored.to_json_obj()
            _check_contract(obj, "project_v1")
            self._projects[pid] = copy.deepcopy(obj)
            self._audit.setdefault(pid, [])
            return stored

    def _write_audit(self, project_id: str, obj: dict[str, Any]) -> None:
        self._audit.setdefault(project_id, []).append(copy.deepcopy(obj))

    def append_audit(self, entry: AuditEntry) -> None:
        obj = entry.to_json_obj()
        _check_contract(obj, AUDIT_SCHEMA_VERSION)
        with self._lock:
            if entry.project_id not in self._projects:
                raise ProjectNotFound(entry.project_id)
            self._write_audit(entry.project_id, obj)

    def commit(self, project: Project, *, expected_version: int | None, entry: AuditEntry) -> Project:
        """Compare-and-set the project and append its audit entry as one step.

        The project is stored only after the audit entry is recorded; an audit
        write failure raises AuditWriteFailed and leaves the project untouched.
        """
        pid = _require_project_id(project.project_id)
        entry_obj = _checked_entry(entry, pid)
        with self._lock:
            cur = self._projects.get(pid)
            version = _next_version(pid, int(cur["version"]) if cur is not None else None, expected_version)
            stored = replace(project, version=version)
            obj = stored.to_json_obj()
            _check_contract(obj, "project_v1")
            try:
                self._write_audit(pid, entry_obj)
            except OSError as e:
                raise AuditWriteFailed(f"audit write failed for {pid}: {e}") from e
            self._projects[pid] = copy.deepcopy(obj)
            return stored

    def load_audit(self, project_id: str) -> list[AuditEntry]:
        with self._lock:
            if project_id not in self._projects:
                raise ProjectNotFound(project_id)
            return [AuditEntry.from_json_obj(copy.deepcopy(o)) for o in self._audit.get(project_id, [])]

    def list_project_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._projects)


@dataclass(frozen=True)
class ProjectPaths:
    project_root: Path
    project_dir: Path
    project_json: Path
    audit_log: Path
    lock_file: Path


def project_paths(project_id: str, *, project_root: Path | None = None) -> ProjectPaths:
    pr = project_root or default_project_root()
    pd = Path(pr) / _require_project_id(project_id)
    return ProjectPaths(
        project_root=Path(pr),
        project_dir=pd,
        project_json=pd / "project.json",
        audit_log=pd / "audit.jsonl",
        lock_file=pd / ".lock",
    )


class FileProjectStore:
    """Projects under <root>/<project_id>/project.json with an append-only audit.jsonl beside it."""

    def __init__(self, project_root: Path | None = None) -> None:
        self.project_root = Path(project_root) if project_root is not None else default_project_root()

    def _paths(self, project_id: str) -> ProjectPaths:
        return project_paths(project_id, project_root=self.project_root)

    @contextmanager
    def _locked(self, paths: ProjectPaths) -> Iterator[None]:
        paths.project_dir.mkdir(parents=True, exist_ok=True)
        with paths.lock_file.open("a+", encoding="utf-8") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read(self, paths: ProjectPaths) -> dict[str, Any] | None:
        if not paths.project_json.is_file():
            return None
        doc = json.loads(paths.project_json.read_text(encoding="utf-8"))
        if not isinstance(doc, dict):
            raise ContractInvalid(f"project.json is not an object: {paths.project_json.as_posix()}")
        return doc

    def get_project(self, project_id: str) -> Project:
        if not is_valid_project_id(project_id):
            raise ProjectNotFound(project_id)
        doc = self._read(self._paths(project_id))
        if doc is None:
            raise ProjectNotFound(project_id)
        return Project.from_json_obj(doc)

    def put_project(self, project: Project, *, expected_version: int | None) -> Project:
        paths = self._paths(project.project_id)
        if expected_version is not None and not paths.project_json.is_file():
            raise ProjectNotFound(project.project_id)
        with self._locked(paths):
            cur = self._read(paths)
            version = _next_version(
                project.project_id, int(cur.get("version", 0)) if cur is not None else None, expected_version
            )
            stored = replace(project, version=version)
            obj = stored.to_json_obj()
            _check_contract(obj, "project_v1")
            _write_json_atomic(paths.project_json, obj)
            return stored

    def _write_audit(self, paths: ProjectPaths, obj: dict[str, Any]) -> None:
        _jsonl_append(paths.audit_log, obj)

    def append_audit(self, entry: AuditEntry) -> None:
        paths = self._paths(entry.project_id)
        if not paths.project_json.is_file():
            raise ProjectNotFound(entry.project_id)
        obj = entry.to_json_obj()
        _check_contract(obj, AUDIT_SCHEMA_VERSION)
        with self._locked(paths):
            self._write_audit(paths, obj)

    def commit(self, project: Project, *, expected_version: int | None, entry: AuditEntry) -> Project:
        """Compare-and-set project.json and append its audit line under one project lock.

        The audit line goes first; if project.json then cannot be replaced the
        log is truncated back so neither write survives.
        """
        paths = self._paths(project.project_id)
        if expected_version is not None and not paths.project_json.is_file():
            raise ProjectNotFound(project.project_id)
        entry_obj = _checked_entry(entry, project.project_id)
        with self._locked(paths):
            cur = self._read(paths)
            version = _next_version(
                project.project_id, int(cur.get("version", 0)) if cur is not None else None, expected_version
            )
            stored = replace(project, version=version)
            obj = stored.to_json_obj()
            _check_contract(obj, "project_v1")

            log_size = paths.audit_log.stat().st_size if paths.audit_log.is_file() else 0
            try:
                self._write_audit(paths, entry_obj)
            except OSError as e:
                raise AuditWriteFailed(f"audit write failed for {project.project_id}: {e}") from e
            try:
                _write_json_atomic(paths.project_json, obj)
            except OSError:
                with paths.audit_log.open("r+b") as fh:
                    fh.truncate(log_size)
                raise
            return stored

    def load_audit(self, project_id: str) -> list[AuditEntry]:
        if not is_valid_project_id(project_id):
            raise ProjectNotFound(project_id)
        paths = self._paths(project_id)
        if not paths.project_json.is_file():
            raise ProjectNotFound(project_id)
        return [AuditEntry.from_json_obj(o) for o in iter_jsonl(paths.audit_log)]

    def list_project_ids(self) -> list[str]:
        root = self.project_root
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir() and (p / "project.json").is_file())
