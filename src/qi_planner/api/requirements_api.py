from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from qi_planner.scheduler.checklist import build_governance_checklist, checklist_stats, determine_checklist
from qi_planner.scheduler.determination import ClassificationFacts, load_classification_facts
from qi_planner.scheduler.documents import plan_document_package
from qi_planner.scheduler.pathway import pathway_summary

router = APIRouter()


async def _facts(request: Request) -> ClassificationFacts:
    try:
        payload = await request.json()
    except Exception:  # noqa: BLE001
        raise HTTPException(status_code=400, detail="invalid json") from None
    try:
        return load_classification_facts(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/requirements/documents")
async def plan_documents(request: Request) -> dict[str, Any]:
    facts = await _facts(request)
    pkg = plan_document_package(facts)
    return {
        "facts": facts.to_json_obj(),
        "pathway": pathway_summary(facts.effective_pathway(), multisite=facts.multisite),
        "package": pkg.to_json_obj(),
    }


@router.post("/requirements/checklist")
async def plan_checklist(request: Request) -> dict[str, Any]:
    facts = await _facts(request)
    reqs = determine_checklist(facts)
    items = build_governance_checklist(facts)
    return {
        "facts": facts.to_json_obj(),
        "package_kind": reqs.package_kind.value,
        "applied_rules": list(reqs.applied_rules),
        "items": [i.to_json_obj() for i in items],
        "stats": checklist_stats(items),
    }
