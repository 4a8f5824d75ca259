from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from qi_planner.scheduler.determination import (
    KIND_DOCUMENT,
    TIER_ESSENTIAL,
    TIER_OPTIONAL,
    TIER_RECOMMENDED,
    Artifact,
    Catalog,
    ClassificationFacts,
    PackageKind,
    RequirementSet,
    determine_requirements,
)
from qi_planner.scheduler.pathway import EthicsPathway
from qi_planner.scheduler.resolver import resolve_order

logger = logging.getLogger(__name__)

PROTOCOL = "PROTOCOL"
PARTICIPANT_INFO_SHEET = "PARTICIPANT_INFO_SHEET"
CONSENT_FORM = "CONSENT_FORM"
DATA_MANAGEMENT_PLAN = "DATA_MANAGEMENT_PLAN"
COVER_LETTER = "COVER_LETTER"
EMF_GRANT_APPLICATION = "EMF_GRANT_APPLICATION"
SITE_ASSESSMENT_FORM = "SITE_ASSESSMENT_FORM"
INVESTIGATOR_CV = "INVESTIGATOR_CV"
BUDGET_JUSTIFICATION = "BUDGET_JUSTIFICATION"
TIMELINE_GANTT = "TIMELINE_GANTT"
REFERENCES_BIBLIOGRAPHY = "REFERENCES_BIBLIOGRAPHY"

DOCUMENT_LABELS: dict[str, str] = {
    PROTOCOL: "Research protocol",
    PARTICIPANT_INFO_SHEET: "Participant information sheet",
    CONSENT_FORM: "Consent form",
    DATA_MANAGEMENT_PLAN: "Data management plan",
    COVER_LETTER: "Cover letter",
    EMF_GRANT_APPLICATION: "EMF grant application",
    SITE_ASSESSMENT_FORM: "Site assessment form",
    INVESTIGATOR_CV: "Investigator CV",
    BUDGET_JUSTIFICATION: "Budget justification",
    TIMELINE_GANTT: "Timeline (Gantt)",
    REFERENCES_BIBLIOGRAPHY: "References / bibliography",
}

TIER_PRIORITY = {TIER_ESSENTIAL: 1, TIER_RECOMMENDED: 2, TIER_OPTIONAL: 3}

SUBMISSION_ORDER: tuple[str, ...] = (
    COVER_LETTER,
    PROTOCOL,
    PARTICIPANT_INFO_SHEET,
    CONSENT_FORM,
    DATA_MANAGEMENT_PLAN,
    INVESTIGATOR_CV,
    BUDGET_JUSTIFICATION,
    TIMELINE_GANTT,
    EMF_GRANT_APPLICATION,
    SITE_ASSESSMENT_FORM,
    REFERENCES_BIBLIOGRAPHY,
)

PAGE_ESTIMATES: dict[str, int] = {
    PROTOCOL: 25,
    PARTICIPANT_INFO_SHEET: 4,
    CONSENT_FORM: 2,
    DATA_MANAGEMENT_PLAN: 5,
    COVER_LETTER: 2,
    EMF_GRANT_APPLICATION: 15,
    SITE_ASSESSMENT_FORM: 3,
    INVESTIGATOR_CV: 2,
    BUDGET_JUSTIFICATION: 2,
    TIMELINE_GANTT: 1,
    REFERENCES_BIBLIOGRAPHY: 3,
}
DEFAULT_PAGE_ESTIMATE = 2


def _doc(
    doc_id: str,
    required: bool,
    tier: str,
    rationale: str,
    *,
    deps: tuple[str, ...] = (),
    template: str | None = None,
) -> Artifact:
    return Artifact(
        artifact_id=doc_id,
        kind=KIND_DOCUMENT,
        required=required,
        priority=TIER_PRIORITY[tier],
        rationale=rationale,
        dependencies=deps,
        label=DOCUMENT_LABELS[doc_id],
        tier=tier,
        template_name=template,
    )


def _base_documents(kind: PackageKind, pathway: EthicsPathway, facts: ClassificationFacts) -> list[Artifact]:
    if kind == PackageKind.MINIMAL:
        return [
            _doc(
                PROTOCOL,
                False,
                TIER_RECOMMENDED,
                "QI projects benefit from documented methodology but formal protocol not required",
            ),
            _doc(DATA_MANAGEMENT_PLAN, False, TIER_RECOMMENDED, "Good practice for data handling even in QI projects"),
        ]
    if kind == PackageKind.STANDARD:
        return [
            _doc(PROTOCOL, True, TIER_ESSENTIAL, "Required for all research ethics applications", template="protocol-template.docx"),
            _doc(
                PARTICIPANT_INFO_SHEET,
                True,
                TIER_ESSENTIAL,
                "Required to inform participants about the research",
                deps=(PROTOCOL,),
                template="pis-template.docx",
            ),
            _doc(
                CONSENT_FORM,
                True,
                TIER_ESSENTIAL,
                "Required to document participant consent",
                deps=(PARTICIPANT_INFO_SHEET,),
                template="consent-template.docx",
            ),
            _doc(DATA_MANAGEMENT_PLAN, True, TIER_ESSENTIAL, "Required for data governance compliance", template="dmp-template.docx"),
            _doc(COVER_LETTER, False, TIER_RECOMMENDED, "Helpful for ethics submission context"),
            _doc(INVESTIGATOR_CV, False, TIER_RECOMMENDED, "May be requested by ethics committee"),
        ]
    if kind == PackageKind.FULL_REVIEW:
        return [
            _doc(PROTOCOL, True, TIER_ESSENTIAL, "Mandatory for full HREC review", template="protocol-template.docx"),
            _doc(
                PARTICIPANT_INFO_SHEET,
                True,
                TIER_ESSENTIAL,
                "Mandatory participant information",
                deps=(PROTOCOL,),
                template="pis-template.docx",
            ),
            _doc(
                CONSENT_FORM,
                True,
                TIER_ESSENTIAL,
                "Mandatory consent documentation",
                deps=(PARTICIPANT_INFO_SHEET,),
                template="consent-template.docx",
            ),
            _doc(DATA_MANAGEMENT_PLAN, True, TIER_ESSENTIAL, "Mandatory for data governance", template="dmp-template.docx"),
            _doc(COVER_LETTER, True, TIER_ESSENTIAL, "Required for HREC submission", template="cover-letter-template.docx"),
            _doc(INVESTIGATOR_CV, True, TIER_ESSENTIAL, "Required for all investigators"),
            _doc(BUDGET_JUSTIFICATION, False, TIER_RECOMMENDED, "Required if seeking funding"),
            _doc(TIMELINE_GANTT, False, TIER_RECOMMENDED, "Helpful for demonstrating feasibility"),
            _doc(EMF_GRANT_APPLICATION, False, TIER_OPTIONAL, "Only if applying for EMF funding"),
            _doc(SITE_ASSESSMENT_FORM, False, TIER_OPTIONAL, "Required for multi-site studies"),
            _doc(REFERENCES_BIBLIOGRAPHY, False, TIER_OPTIONAL, "Can be integrated into protocol"),
        ]
    return [
        _doc(PROTOCOL, True, TIER_ESSENTIAL, "Required for hybrid pathway", template="protocol-template.docx"),
        _doc(
            PARTICIPANT_INFO_SHEET,
            True,
            TIER_ESSENTIAL,
            "Required for research component",
            deps=(PROTOCOL,),
            template="pis-template.docx",
        ),
        _doc(
            CONSENT_FORM,
            True,
            TIER_ESSENTIAL,
            "Required for research component",
            deps=(PARTICIPANT_INFO_SHEET,),
            template="consent-template.docx",
        ),
        _doc(DATA_MANAGEMENT_PLAN, True, TIER_ESSENTIAL, "Required for data governance", template="dmp-template.docx"),
        _doc(COVER_LETTER, True, TIER_ESSENTIAL, "Important for explaining hybrid nature"),
    ]


def _package_notes(kind: PackageKind, facts: ClassificationFacts) -> list[str]:
    notes: list[str] = []
    if kind == PackageKind.MINIMAL:
        notes.append("This is a QI project requiring minimal formal documentation.")
        notes.append("Consider creating a protocol for internal documentation purposes.")
    elif kind == PackageKind.STANDARD:
        notes.append("Standard low-risk research documentation package.")
        notes.append("Ensure all documents reference the same protocol version.")
    elif kind == PackageKind.FULL_REVIEW:
        notes.append("Complete documentation package for full HREC review.")
        notes.append("Allow 4-6 weeks for document preparation and review.")
        notes.append("All documents must be submitted together in the ethics portal.")
    else:
        notes.append("Hybrid project requires documentation for both QI and research components.")
        notes.append("Clearly distinguish QI activities from research activities in all documents.")
    if facts.consent_waived:
        notes.append("Consent waiver approved - include waiver justification in ethics application.")
    if facts.multisite:
        notes.append(f"Multi-site study ({facts.site_count} sites) - coordinate site-specific approvals.")
    if facts.has_funding:
        notes.append(f"Funding scheme '{facts.funding_scheme}' - prepare the grant application alongside the protocol.")
    return notes


DOCUMENT_CATALOG = Catalog(
    name="documents",
    base=_base_documents,
    consent_ids=(CONSENT_FORM, PARTICIPANT_INFO_SHEET),
    waiver_rationales={
        CONSENT_FORM: "Consent waiver approved - formal consent form not required",
        PARTICIPANT_INFO_SHEET: "Consent waiver approved - PIS may not be required",
    },
    site_assessment=_doc(
        SITE_ASSESSMENT_FORM, True, TIER_ESSENTIAL, "Multi-site study requires site-specific assessment forms"
    ),
    grant_application=_doc(
        EMF_GRANT_APPLICATION, True, TIER_ESSENTIAL, "EMF funding application required based on project requirements"
    ),
    notes=_package_notes,
)


@dataclass(frozen=True)
class DocumentPackage:
    requirements: RequirementSet
    generation_order: list[str]
    submission_order: list[str]
    estimated_pages: int
    notes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_json_obj(self) -> dict[str, Any]:
        obj = self.requirements.to_json_obj()
        obj.update(
            {
                "generation_order": list(self.generation_order),
                "submission_order": list(self.submission_order),
                "estimated_pages": int(self.estimated_pages),
                "notes": list(self.notes),
                "warnings": list(self.warnings),
            }
        )
        return obj


@dataclass(frozen=True)
class PackageValidation:
    complete: bool
    missing: list[str]
    warnings: list[str]

    def to_json_obj(self) -> dict[str, Any]:
        return {"complete": bool(self.complete), "missing": list(self.missing), "warnings": list(self.warnings)}


def determine_documents(facts: ClassificationFacts) -> RequirementSet:
    return determine_requirements(facts, catalog=DOCUMENT_CATALOG)


def estimate_pages(artifacts: Iterable[Artifact]) -> int:
    return sum(PAGE_ESTIMATES.get(a.artifact_id, DEFAULT_PAGE_ESTIMATE) for a in artifacts)


def plan_document_package(facts: ClassificationFacts) -> DocumentPackage:
    reqs = determine_documents(facts)
    outcome = resolve_order(reqs.required)
    if outcome.degraded:
        logger.warning(
            "document generation order forced for %s package: %s",
            reqs.package_kind.value,
            ", ".join(a.artifact_id for a in outcome.forced),
        )
    required_ids = {a.artifact_id for a in reqs.required}
    return DocumentPackage(
        requirements=reqs,
        generation_order=[a.artifact_id for a in outcome.ordered],
        submission_order=[d for d in SUBMISSION_ORDER if d in required_ids],
        estimated_pages=estimate_pages(reqs.required),
        notes=list(reqs.notes),
        warnings=outcome.warnings(),
    )


def validate_document_package(package: DocumentPackage, generated_ids: Iterable[str]) -> PackageValidation:
    generated = set(generated_ids)
    missing = [a.artifact_id for a in package.requirements.required if a.artifact_id not in generated]
    warnings: list[str] = []
    for a in package.requirements.required:
        if a.artifact_id not in generated:
            continue
        for dep in a.dependencies:
            if dep not in generated:
                warnings.append(f"{a.artifact_id} depends on {dep} which is not generated")
    return PackageValidation(complete=not missing, missing=missing, warnings=warnings)
