from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from qi_planner.checkpoints.manager import CheckpointManager
from qi_planner.pipeline.advancement import can_advance
from qi_planner.pipeline.status import PIPELINE_STAGES, ProjectStatus, parse_stage
from qi_planner.pipeline.validation import (
    current_stage,
    project_completion_percent,
    required_approvals,
    validate_all_stages,
    validate_stage,
)
from qi_planner.policies.resolve import load_checkpoint_policy
from qi_planner.projectstore.errors import CheckpointInvalid, ContractInvalid
from qi_planner.projectstore.store import FileProjectStore, default_project_root
from qi_planner.scheduler.checklist import build_governance_checklist, checklist_stats
from qi_planner.scheduler.determination import load_classification_facts
from qi_planner.scheduler.documents import plan_document_package

EXIT_OK = 0
EXIT_USAGE_OR_ERROR = 1
EXIT_INVALID = 2

_STAGE_CHOICES = [s.value for s in PIPELINE_STAGES]


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _read_json_object(path: str, *, what: str) -> dict[str, Any]:
    doc = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ValueError(f"{what} must be a JSON object: {path}")
    return doc


def _status_doc(store: FileProjectStore, project_id: str) -> dict[str, Any]:
    p = store.get_project(project_id)
    return {
        "project_id": p.project_id,
        "status": p.status.value,
        "version": p.version,
        "current_stage": current_stage(p).value,
        "completion_percent": project_completion_percent(p),
        "checkpoints": p.checkpoints.to_json_obj(),
        "updated_at": p.updated_at,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m qi_planner.pipeline.cli")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_create = sub.add_parser("create", help="Create a DRAFT project from an intake JSON file.")
    p_create.add_argument("--intake", required=True, help="Intake JSON file.")
    p_create.add_argument("--classification", default=None, help="Classification JSON file.")
    p_create.add_argument("--frameworks", default=None, help="Frameworks JSON file.")
    p_create.add_argument("--project-id", default=None)
    p_create.add_argument("--actor", default="system")

    sub.add_parser("list", help="List stored projects.")

    p_status = sub.add_parser("status", help="Show status, current stage and checkpoints.")
    p_status.add_argument("--project-id", required=True)

    p_val = sub.add_parser("validate", help="Validate one stage (or every stage up to the current one).")
    p_val.add_argument("--project-id", required=True)
    p_val.add_argument("--stage", choices=_STAGE_CHOICES, default=None)

    p_adv = sub.add_parser("can-advance", help="Check whether a project may advance to a target stage.")
    p_adv.add_argument("--project-id", required=True)
    p_adv.add_argument("--target", required=True, choices=_STAGE_CHOICES)

    p_comp = sub.add_parser("complete", help="Attach a stage payload and mark the stage complete.")
    p_comp.add_argument("--project-id", required=True)
    p_comp.add_argument("--stage", required=True, choices=_STAGE_CHOICES)
    p_comp.add_argument("--payload", required=True, help="Stage payload JSON file.")
    p_comp.add_argument("--actor", default="system")

    p_app = sub.add_parser("approve", help="Approve a stage checkpoint (audited).")
    p_app.add_argument("--project-id", required=True)
    p_app.add_argument("--stage", required=True, choices=_STAGE_CHOICES)
    p_app.add_argument("--approver", required=True)

    p_rej = sub.add_parser("reject", help="Reject a stage checkpoint (status -> REVISION_REQUIRED).")
    p_rej.add_argument("--project-id", required=True)
    p_rej.add_argument("--stage", required=True, choices=_STAGE_CHOICES)
    p_rej.add_argument("--reason", required=True)
    p_rej.add_argument("--actor", default="user")

    p_set = sub.add_parser("set-status", help="Out-of-band status change (audited).")
    p_set.add_argument("--project-id", required=True)
    p_set.add_argument("--status", required=True, choices=[s.value for s in ProjectStatus])
    p_set.add_argument("--actor", required=True)
    p_set.add_argument("--reason", default=None)

    p_audit = sub.add_parser("audit", help="Print the append-only audit log.")
    p_audit.add_argument("--project-id", required=True)

    p_appr = sub.add_parser("approvals", help="List required approvals (checkpoints, HREC, RGO, sites, grant).")
    p_appr.add_argument("--project-id", required=True)

    p_docs = sub.add_parser("plan-documents", help="Plan the document package for classification facts.")
    p_docs.add_argument("--facts", required=True, help="classification_facts_v1 JSON file.")

    p_chk = sub.add_parser("plan-checklist", help="Build the governance checklist for classification facts.")
    p_chk.add_argument("--facts", required=True, help="classification_facts_v1 JSON file.")

    parser.add_argument(
        "--project-root",
        default=None,
        help="Project root directory (default: env QIP_PROJECT_ROOT or ${QIP_ARTIFACT_ROOT}/projects).",
    )
    parser.add_argument("--policy", default=None, help="Checkpoint policy YAML (default: env QIP_CHECKPOINT_POLICY).")

    args = parser.parse_args(argv)

    try:
        store = FileProjectStore(Path(args.project_root) if args.project_root else default_project_root())

        def manager() -> CheckpointManager:
            policy = load_checkpoint_policy(Path(args.policy) if args.policy else None)
            return CheckpointManager(store, policy=policy)

        if args.cmd == "create":
            p = manager().create_project(
                _read_json_object(args.intake, what="intake"),
                classification=_read_json_object(args.classification, what="classification")
                if args.classification
                else None,
                frameworks=_read_json_object(args.frameworks, what="frameworks") if args.frameworks else None,
                project_id=args.project_id,
                actor=str(args.actor),
            )
            _print_json(p.to_json_obj())
            return EXIT_OK

        if args.cmd == "list":
            _print_json({"projects": [_status_doc(store, pid) for pid in store.list_project_ids()]})
            return EXIT_OK

        if args.cmd == "status":
            _print_json(_status_doc(store, str(args.project_id)))
            return EXIT_OK

        if args.cmd == "validate":
            p = store.get_project(str(args.project_id))
            if args.stage:
                v = validate_stage(p, parse_stage(args.stage))
                _print_json(v.to_json_obj())
                return EXIT_OK if v.data_complete else EXIT_INVALID
            results = validate_all_stages(p)
            _print_json({"project_id": p.project_id, "stages": [v.to_json_obj() for v in results]})
            return EXIT_OK if all(v.data_complete for v in results) else EXIT_INVALID

        if args.cmd == "can-advance":
            p = store.get_project(str(args.project_id))
            check = can_advance(p, parse_stage(args.target))
            _print_json(check.to_json_obj())
            return EXIT_OK if check.allowed else EXIT_INVALID

        if args.cmd == "complete":
            payload = _read_json_object(args.payload, what="payload")
            entry = manager().mark_stage_complete(str(args.project_id), args.stage, payload, actor=str(args.actor))
            _print_json(entry.to_json_obj())
            return EXIT_OK

        if args.cmd == "approve":
            entry = manager().approve(str(args.project_id), args.stage, str(args.approver))
            _print_json(entry.to_json_obj())
            return EXIT_OK

        if args.cmd == "reject":
            entry = manager().reject(str(args.project_id), args.stage, str(args.reason), actor=str(args.actor))
            _print_json(entry.to_json_obj())
            return EXIT_OK

        if args.cmd == "set-status":
            entry = manager().change_status(
                str(args.project_id), args.status, actor=str(args.actor), reason=args.reason
            )
            _print_json(entry.to_json_obj())
            return EXIT_OK

        if args.cmd == "audit":
            entries = store.load_audit(str(args.project_id))
            _print_json({"project_id": str(args.project_id), "entries": [e.to_json_obj() for e in entries]})
            return EXIT_OK

        if args.cmd == "approvals":
            p = store.get_project(str(args.project_id))
            _print_json({"project_id": p.project_id, **required_approvals(p).to_json_obj()})
            return EXIT_OK

        if args.cmd == "plan-documents":
            facts = load_classification_facts(_read_json_object(args.facts, what="facts"))
            _print_json(plan_document_package(facts).to_json_obj())
            return EXIT_OK

        if args.cmd == "plan-checklist":
            facts = load_classification_facts(_read_json_object(args.facts, what="facts"))
            items = build_governance_checklist(facts)
            _print_json({"items": [i.to_json_obj() for i in items], "stats": checklist_stats(items)})
            return EXIT_OK

        print(json.dumps({"error": "unknown command"}, sort_keys=True), file=sys.stderr)
        return EXIT_USAGE_OR_ERROR
    except (CheckpointInvalid, ContractInvalid) as e:
        _print_json({"error": str(e)})
        return EXIT_INVALID
    except Exception as e:  # noqa: BLE001
        _print_json({"error": str(e)})
        return EXIT_USAGE_OR_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
