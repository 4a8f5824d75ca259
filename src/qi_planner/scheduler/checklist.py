from __future__ import annotations

from dataclasses import replace
from typing import Any, Iterable

from qi_planner.scheduler.determination import (
    ARTIFACT_STATUSES,
    KIND_CHECKLIST,
    TIER_ESSENTIAL,
    Artifact,
    Catalog,
    ClassificationFacts,
    PackageKind,
    RequirementSet,
    determine_requirements,
    round_half_up_pct,
)
from qi_planner.scheduler.pathway import EthicsPathway, RiskLevel
from qi_planner.scheduler.resolver import order

SRC_NATIONAL_STATEMENT = "NHMRC_NATIONAL_STATEMENT"
SRC_QH_GOVERNANCE = "QH_RESEARCH_GOVERNANCE"
SRC_MN_GOVERNANCE = "MN_CLINICAL_GOVERNANCE_POLICY"
SRC_PRIVACY_ACT = "PRIVACY_ACT_1988"
SRC_IPA_QLD = "INFORMATION_PRIVACY_ACT_2009_QLD"

QLD_INSTITUTIONS = frozenset({"QH", "QH_MN", "QH_RMH", "QH_GCUH"})
PERSONAL_DATA_TYPES = frozenset({"IDENTIFIABLE", "RE_IDENTIFIABLE"})

SITE_SPECIFIC_ASSESSMENT = "SITE_SPECIFIC_ASSESSMENT"
GRANT_APPLICATION = "GRANT_APPLICATION"

# Item -> prerequisite items; entries naming an item absent from the checklist are dropped.
DEPENDENCY_MAP: dict[str, tuple[str, ...]] = {
    "NS_ETHICS_APPLICATION": ("NS_RISK_ASSESSMENT",),
    "NS_PICF": ("NS_ETHICS_APPLICATION",),
    "NS_PROTOCOL": ("NS_RISK_ASSESSMENT",),
    "NS_RECRUITMENT_MATERIALS": ("NS_PICF",),
    "QH_RGO_APPLICATION": ("NS_ETHICS_APPLICATION",),
    "MN_GOVERNANCE_APPLICATION": ("NS_ETHICS_APPLICATION",),
    SITE_SPECIFIC_ASSESSMENT: ("QH_RGO_APPLICATION",),
    "QH_INVESTIGATOR_AGREEMENTS": (SITE_SPECIFIC_ASSESSMENT,),
    "QH_CTA": ("QH_RGO_APPLICATION",),
    "PA_COLLECTION_NOTICE": ("NS_PROTOCOL",),
    "PA_CONSENT_PERSONAL_INFO": ("PA_COLLECTION_NOTICE",),
    "PA_SECURE_STORAGE": ("NS_PROTOCOL",),
    "PA_PIA": ("NS_PROTOCOL",),
    GRANT_APPLICATION: ("NS_PROTOCOL",),
    "INSTITUTIONAL_REGISTER": ("QH_RGO_APPLICATION", "MN_GOVERNANCE_APPLICATION"),
}


def _item(item_id: str, label: str, source: str, priority: int, category: str, rationale: str) -> Artifact:
    return Artifact(
        artifact_id=item_id,
        kind=KIND_CHECKLIST,
        required=True,
        priority=priority,
        rationale=rationale,
        status="NOT_STARTED",
        label=label,
        tier=TIER_ESSENTIAL,
        category=category,
        requirement_source=source,
    )


def national_statement_items(pathway: EthicsPathway, risk_level: RiskLevel) -> list[Artifact]:
    src = SRC_NATIONAL_STATEMENT
    items = [
        _item(
            "NS_RISK_ASSESSMENT",
            "Complete NHMRC National Statement Risk Assessment",
            src,
            1,
            "ETHICS_ASSESSMENT",
            "Assess research merit, risk, consent requirements per NS Chapter 2.1",
        ),
        _item(
            "NS_ETHICS_APPLICATION",
            "Prepare ethics application (HREA or institutional form)",
            src,
            2,
            "ETHICS_APPLICATION",
            "Use HREA form for multi-site or institutional form for single-site",
        ),
        _item(
            "NS_PROTOCOL",
            "Draft research protocol with ethics considerations",
            src,
            2,
            "DOCUMENTATION",
            "Include background, aims, methods, ethical considerations, references",
        ),
        _item(
            "NS_PICF",
            "Develop Participant Information and Consent Form (PICF)",
            src,
            3,
            "CONSENT",
            "Must meet NS requirements for plain language, comprehension, voluntary participation",
        ),
        _item(
            "NS_COI_DECLARATION",
            "Complete conflict of interest declaration",
            src,
            2,
            "GOVERNANCE",
            "All investigators must declare financial and non-financial conflicts",
        ),
    ]
    if risk_level in (RiskLevel.MODERATE, RiskLevel.HIGH):
        items.append(
            _item(
                "NS_INSURANCE",
                "Obtain clinical trial insurance or indemnity",
                src,
                3,
                "INSURANCE",
                "Required for interventional research with more than low risk (NS 3.3.32)",
            )
        )
        items.append(
            _item(
                "NS_SAFETY_MONITORING",
                "Develop safety monitoring and adverse event reporting plan",
                src,
                2,
                "SAFETY",
                "Must specify stopping rules, SAE reporting timelines, DSMB if applicable",
            )
        )
    if pathway == EthicsPathway.FULL_HREC_REVIEW:
        items.append(
            _item(
                "NS_INVESTIGATOR_CREDENTIALS",
                "Prepare investigator CVs and GCP certificates",
                src,
                2,
                "INVESTIGATOR_CREDENTIALS",
                "All named investigators need current CVs; CI needs GCP certification",
            )
        )
        items.append(
            _item(
                "NS_RECRUITMENT_MATERIALS",
                "Draft recruitment materials for HREC review",
                src,
                3,
                "RECRUITMENT",
                "Include advertisements, flyers, social media posts, email scripts",
            )
        )
    return items


def qh_governance_items(pathway: EthicsPathway) -> list[Artifact]:
    src = SRC_QH_GOVERNANCE
    items = [
        _item(
            "QH_RGO_APPLICATION",
            "Submit Research Governance Office (RGO) application",
            src,
            4,
            "GOVERNANCE_SUBMISSION",
            "Submit via QH Online Forms system after HREC approval obtained",
        ),
        _item(
            SITE_SPECIFIC_ASSESSMENT,
            "Complete Site Specific Assessment (SSA) form",
            src,
            4,
            "SITE_ASSESSMENT",
            "Required for each QH site where research will be conducted",
        ),
        _item(
            "QH_INVESTIGATOR_AGREEMENTS",
            "Obtain site investigator agreement signatures",
            src,
            5,
            "AGREEMENTS",
            "All site PIs and co-investigators must sign investigator agreement",
        ),
        _item(
            "QH_COORDINATOR",
            "Confirm QH research coordinator availability",
            src,
            3,
            "RESOURCES",
            "Some studies require research coordinator support - check with RGO",
        ),
    ]
    if pathway == EthicsPathway.FULL_HREC_REVIEW:
        items.append(
            _item(
                "QH_FEASIBILITY",
                "Complete Clinical Trials Site Feasibility Assessment",
                src,
                3,
                "FEASIBILITY",
                "Required for interventional trials to assess site capacity",
            )
        )
        items.append(
            _item(
                "QH_CTA",
                "Establish clinical trial agreement (CTA) with sponsor",
                src,
                4,
                "CONTRACTS",
                "Industry-sponsored trials require CTA negotiation via QH Legal",
            )
        )
    return items


def mn_governance_items(pathway: EthicsPathway) -> list[Artifact]:
    src = SRC_MN_GOVERNANCE
    items = [
        _item(
            "MN_GOVERNANCE_APPLICATION",
            "Submit Mater Research Governance application",
            src,
            4,
            "GOVERNANCE_SUBMISSION",
            "Submit to MN Research Office after ethics approval obtained",
        ),
        _item(
            "MN_HOD_APPROVAL",
            "Obtain Head of Department approval",
            src,
            3,
            "DEPARTMENTAL_APPROVAL",
            "Required from HoD of department where research will be conducted",
        ),
        _item(
            "MN_RESOURCE_ASSESSMENT",
            "Complete resource allocation assessment",
            src,
            3,
            "RESOURCES",
            "Document staff time, equipment, space requirements",
        ),
        _item(
            "MN_RESEARCH_REGISTER",
            "Register study with Mater Research Register",
            src,
            5,
            "REGISTRATION",
            "All MN studies must be registered on internal research register",
        ),
    ]
    if pathway == EthicsPathway.QI_REGISTRATION:
        items.append(
            _item(
                "MN_QI_REGISTRATION",
                "Complete QI Registration Form and submit to Unit Director",
                src,
                1,
                "QI_REGISTRATION",
                "MN QI projects require Unit Director approval via QI Registration Form",
            )
        )
        items.append(
            _item(
                "MN_QI_PRESENTATION",
                "Present QI project at departmental meeting",
                src,
                5,
                "QI_PRESENTATION",
                "Required for department awareness and stakeholder engagement",
            )
        )
    return items


def privacy_act_items(data_types: Iterable[str]) -> list[Artifact]:
    src = SRC_PRIVACY_ACT
    items = [
        _item(
            "PA_COLLECTION_NOTICE",
            "Prepare Privacy Collection Notice (APP 5)",
            src,
            2,
            "PRIVACY_NOTICE",
            "Must notify individuals about data collection at or before collection",
        ),
        _item(
            "PA_CONSENT_PERSONAL_INFO",
            "Obtain consent for use and disclosure of personal information",
            src,
            3,
            "CONSENT",
            "Required unless exemption applies (e.g., impracticable, research in public interest)",
        ),
        _item(
            "PA_SECURE_STORAGE",
            "Implement secure storage and access controls (APP 11)",
            src,
            3,
            "DATA_SECURITY",
            "Must take reasonable steps to protect personal information from misuse and loss",
        ),
        _item(
            "PA_BREACH_RESPONSE",
            "Establish data breach response protocol",
            src,
            3,
            "BREACH_RESPONSE",
            "Notifiable Data Breaches scheme requires breach notification if serious harm likely",
        ),
    ]
    if "IDENTIFIABLE" in set(data_types):
        items.append(
            _item(
                "PA_LAWFUL_BASIS",
                "Document lawful basis for collection of sensitive information",
                src,
                2,
                "LAWFUL_BASIS",
                "Health information is sensitive - must meet APP 3.3 or 3.4 conditions",
            )
        )
        items.append(
            _item(
                "PA_PIA",
                "Conduct Privacy Impact Assessment (PIA)",
                src,
                2,
                "PRIVACY_ASSESSMENT",
                "Recommended for projects involving sensitive personal information",
            )
        )
    return items


def ipa_qld_items(data_types: Iterable[str]) -> list[Artifact]:
    src = SRC_IPA_QLD
    items = [
        _item(
            "IPA_PRINCIPLES",
            "Ensure compliance with Queensland Information Privacy Principles",
            src,
            2,
            "QLD_PRIVACY",
            "IPP 2 (collection), IPP 9 (security), IPP 11 (disclosure) apply to Qld agencies",
        ),
        _item(
            "IPA_COLLECTION_PURPOSE",
            "Document purpose for personal information collection",
            src,
            2,
            "COLLECTION_PURPOSE",
            "Must collect only what is necessary and directly related to function (IPP 2)",
        ),
    ]
    if "IDENTIFIABLE" in set(data_types):
        items.append(
            _item(
                "IPA_PIE_APPROVAL",
                "Obtain Public Interest Entity (PIE) approval if applicable",
                src,
                3,
                "PIE_APPROVAL",
                "Required for Qld agency research using identifiable data without consent",
            )
        )
    return items


def institutional_items(institution: str) -> list[Artifact]:
    return [
        _item(
            "INSTITUTIONAL_REGISTER",
            "Register study on institutional research register",
            f"{institution or 'INSTITUTIONAL'}_GOVERNANCE",
            5,
            "REGISTRATION",
            "Most institutions maintain research registers for governance oversight",
        )
    ]


def _base_checklist(kind: PackageKind, pathway: EthicsPathway, facts: ClassificationFacts) -> list[Artifact]:
    institution = facts.institution
    personal = any(dt in PERSONAL_DATA_TYPES for dt in facts.data_types)

    items: list[Artifact] = []
    if pathway != EthicsPathway.QI_REGISTRATION:
        items.extend(national_statement_items(pathway, facts.risk_level))
    if institution == "QH" or institution.startswith("QH_"):
        items.extend(qh_governance_items(pathway))
    if institution == "MN":
        items.extend(mn_governance_items(pathway))
    if personal:
        items.extend(privacy_act_items(facts.data_types))
    if institution in QLD_INSTITUTIONS and personal:
        items.extend(ipa_qld_items(facts.data_types))
    items.extend(institutional_items(institution))
    return items


def attach_dependencies(items: list[Artifact]) -> list[Artifact]:
    present = {a.artifact_id for a in items}
    return [
        replace(a, dependencies=tuple(d for d in DEPENDENCY_MAP.get(a.artifact_id, ()) if d in present)) for a in items
    ]


CHECKLIST_CATALOG = Catalog(
    name="governance_checklist",
    base=_base_checklist,
    consent_ids=("NS_PICF", "PA_CONSENT_PERSONAL_INFO"),
    waiver_rationales={
        "NS_PICF": "Consent waiver approved - PICF not required; document waiver justification instead",
        "PA_CONSENT_PERSONAL_INFO": "Consent waiver approved - rely on the research exemption for personal information",
    },
    site_assessment=_item(
        SITE_SPECIFIC_ASSESSMENT,
        "Complete Site Specific Assessment (SSA) form",
        SRC_QH_GOVERNANCE,
        4,
        "SITE_ASSESSMENT",
        "Multi-site study requires a site specific assessment for every participating site",
    ),
    grant_application=_item(
        GRANT_APPLICATION,
        "Prepare grant application for the funding scheme",
        "FUNDING_BODY",
        3,
        "FUNDING",
        "Funding scheme declared - grant application must be lodged with the funding body",
    ),
    finalize=attach_dependencies,
)


def determine_checklist(facts: ClassificationFacts) -> RequirementSet:
    return determine_requirements(facts, catalog=CHECKLIST_CATALOG)


def build_governance_checklist(facts: ClassificationFacts) -> list[Artifact]:
    """Required and optional governance items in dependency order."""
    return order(determine_checklist(facts).artifacts)


def checklist_stats(items: Iterable[Artifact]) -> dict[str, Any]:
    items = list(items)
    total = len(items)
    counts = {s: sum(1 for i in items if i.status == s) for s in ARTIFACT_STATUSES}
    return {
        "total": total,
        "not_started": counts["NOT_STARTED"],
        "in_progress": counts["IN_PROGRESS"],
        "complete": counts["COMPLETE"],
        "percent_complete": round_half_up_pct(counts["COMPLETE"], total),
    }


def next_actionable_items(items: Iterable[Artifact]) -> list[Artifact]:
    items = list(items)
    done = {i.artifact_id for i in items if i.status == "COMPLETE"}
    return [i for i in items if i.status != "COMPLETE" and all(d in done for d in i.dependencies)]


def update_item_status(items: Iterable[Artifact], artifact_id: str, status: str) -> list[Artifact]:
    s = str(status or "").strip().upper()
    if s not in ARTIFACT_STATUSES:
        raise ValueError(f"invalid checklist status: {status!r}")
    items = list(items)
    if not any(i.artifact_id == artifact_id for i in items):
        raise ValueError(f"checklist item not found: {artifact_id}")
    return [replace(i, status=s) if i.artifact_id == artifact_id else i for i in items]
