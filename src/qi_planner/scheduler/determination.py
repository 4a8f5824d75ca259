from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from qi_planner.contracts import validate as contracts_validate
from qi_planner.projectstore.errors import ContractInvalid
from qi_planner.scheduler.pathway import (
    EthicsPathway,
    ProjectType,
    RiskLevel,
    derive_pathway,
    parse_pathway,
    parse_project_type,
    parse_risk_level,
)

KIND_DOCUMENT = "document"
KIND_CHECKLIST = "checklist"

ARTIFACT_STATUSES = ("NOT_STARTED", "IN_PROGRESS", "COMPLETE")

TIER_ESSENTIAL = "ESSENTIAL"
TIER_RECOMMENDED = "RECOMMENDED"
TIER_OPTIONAL = "OPTIONAL"


def round_half_up_pct(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(math.floor(100.0 * part / total + 0.5))


class PackageKind(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL_REVIEW = "full_review"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class Artifact:
    artifact_id: str
    kind: str
    required: bool
    priority: int
    rationale: str = ""
    dependencies: tuple[str, ...] = ()
    status: str | None = None
    label: str = ""
    tier: str = ""
    category: str = ""
    requirement_source: str = ""
    template_name: str | None = None
    notes: str = ""

    def to_json_obj(self) -> dict[str, Any]:
        obj: dict[str, Any] = {
            "artifact_id": self.artifact_id,
            "kind": self.kind,
            "required": bool(self.required),
            "priority": int(self.priority),
            "rationale": self.rationale,
            "dependencies": list(self.dependencies),
        }
        for k in ("status", "label", "tier", "category", "requirement_source", "template_name", "notes"):
            v = getattr(self, k)
            if v:
                obj[k] = v
        return obj


@dataclass(frozen=True)
class ClassificationFacts:
    project_type: ProjectType
    risk_level: RiskLevel = RiskLevel.LOW
    pathway: EthicsPathway | None = None
    consent_waived: bool = False
    site_count: int = 1
    funding_scheme: str | None = None
    vulnerable_population: bool = False
    institution: str = ""
    data_types: tuple[str, ...] = ("DE_IDENTIFIED",)

    @property
    def multisite(self) -> bool:
        return self.site_count > 1

    @property
    def has_funding(self) -> bool:
        return self.funding_scheme is not None

    def effective_pathway(self) -> EthicsPathway:
        if self.pathway is not None:
            return self.pathway
        return derive_pathway(self.project_type, self.risk_level)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "project_type": self.project_type.value,
            "risk_level": self.risk_level.value,
            "pathway": self.pathway.value if self.pathway is not None else None,
            "consent_waived": bool(self.consent_waived),
            "site_count": int(self.site_count),
            "funding_scheme": self.funding_scheme,
            "vulnerable_population": bool(self.vulnerable_population),
            "institution": self.institution,
            "data_types": list(self.data_types),
        }

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> ClassificationFacts:
        if not isinstance(obj, dict):
            raise ValueError("classification facts must be a JSON object")
        pathway = obj.get("pathway")
        funding = obj.get("funding_scheme")
        data_types = obj.get("data_types")
        if not isinstance(data_types, list):
            data_types = ["DE_IDENTIFIED"]
        site_count = int(obj.get("site_count", 1) or 0)
        if site_count < 0:
            raise ValueError("site_count must be >= 0")
        return cls(
            project_type=parse_project_type(obj.get("project_type")),
            risk_level=parse_risk_level(obj.get("risk_level", RiskLevel.LOW.value)),
            pathway=parse_pathway(pathway) if pathway else None,
            consent_waived=bool(obj.get("consent_waived", False)),
            site_count=site_count,
            funding_scheme=str(funding).strip() if funding is not None and str(funding).strip() else None,
            vulnerable_population=bool(obj.get("vulnerable_population", False)),
            institution=str(obj.get("institution") or "").strip().upper(),
            data_types=tuple(str(x).strip().upper() for x in data_types if str(x).strip()),
        )


@dataclass(frozen=True)
class Catalog:
    """One artifact family fed through the shared determination policy.

    `base` builds the starting list for a package kind; the rule hooks name
    which artifacts the consent, multi-site and funding rules act on.
    """

    name: str
    base: Callable[[PackageKind, EthicsPathway, ClassificationFacts], list[Artifact]]
    consent_ids: tuple[str, ...]
    waiver_rationales: dict[str, str]
    site_assessment: Artifact
    grant_application: Artifact
    vulnerable_note: str = " - Enhanced consent required for vulnerable population"
    finalize: Callable[[list[Artifact]], list[Artifact]] | None = None
    notes: Callable[[PackageKind, ClassificationFacts], list[str]] | None = None


@dataclass(frozen=True)
class RequirementSet:
    package_kind: PackageKind
    pathway: EthicsPathway
    required: list[Artifact]
    optional: list[Artifact]
    applied_rules: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def artifacts(self) -> list[Artifact]:
        return [*self.required, *self.optional]

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "package_kind": self.package_kind.value,
            "pathway": self.pathway.value,
            "required": [a.to_json_obj() for a in self.required],
            "optional": [a.to_json_obj() for a in self.optional],
            "applied_rules": list(self.applied_rules),
            "notes": list(self.notes),
        }


def select_package_kind(project_type: ProjectType, pathway: EthicsPathway) -> PackageKind:
    # QI projects take the minimal package whatever pathway they were routed to.
    if project_type == ProjectType.QI:
        return PackageKind.MINIMAL
    return {
        EthicsPathway.QI_REGISTRATION: PackageKind.MINIMAL,
        EthicsPathway.LOW_RISK_RESEARCH: PackageKind.STANDARD,
        EthicsPathway.FULL_HREC_REVIEW: PackageKind.FULL_REVIEW,
        EthicsPathway.HYBRID_REVIEW: PackageKind.HYBRID,
    }[pathway]


def _find(artifacts: list[Artifact], artifact_id: str) -> int | None:
    for i, a in enumerate(artifacts):
        if a.artifact_id == artifact_id:
            return i
    return None


def _force_required(artifacts: list[Artifact], template: Artifact) -> list[Artifact]:
    i = _find(artifacts, template.artifact_id)
    if i is None:
        return [*artifacts, replace(template, required=True, tier=TIER_ESSENTIAL)]
    out = list(artifacts)
    out[i] = replace(out[i], required=True, tier=TIER_ESSENTIAL, rationale=template.rationale)
    return out


def rule_consent_waiver(artifacts: list[Artifact], facts: ClassificationFacts, catalog: Catalog) -> list[Artifact] | None:
    if not facts.consent_waived:
        return None
    out: list[Artifact] = []
    for a in artifacts:
        if a.artifact_id in catalog.consent_ids:
            a = replace(
                a,
                required=False,
                tier=TIER_OPTIONAL,
                rationale=catalog.waiver_rationales.get(a.artifact_id, "Consent waiver approved"),
            )
        out.append(a)
    return out


def rule_multisite(artifacts: list[Artifact], facts: ClassificationFacts, catalog: Catalog) -> list[Artifact] | None:
    if not facts.multisite:
        return None
    return _force_required(artifacts, catalog.site_assessment)


def rule_funding(artifacts: list[Artifact], facts: ClassificationFacts, catalog: Catalog) -> list[Artifact] | None:
    if not facts.has_funding:
        return None
    return _force_required(artifacts, catalog.grant_application)


def rule_vulnerable_population(
    artifacts: list[Artifact], facts: ClassificationFacts, catalog: Catalog
) -> list[Artifact] | None:
    if not facts.vulnerable_population:
        return None
    out: list[Artifact] = []
    for a in artifacts:
        if a.artifact_id in catalog.consent_ids and a.required:
            a = replace(a, rationale=a.rationale + catalog.vulnerable_note)
        out.append(a)
    return out


# Applied in this order; a later rule overrides an earlier one on the same artifact.
RULES: tuple[tuple[str, Callable[..., list[Artifact] | None]], ...] = (
    ("consent_waiver", rule_consent_waiver),
    ("multisite", rule_multisite),
    ("funding_scheme", rule_funding),
    ("vulnerable_population", rule_vulnerable_population),
)


def determine_requirements(facts: ClassificationFacts, *, catalog: Catalog) -> RequirementSet:
    pathway = facts.effective_pathway()
    kind = select_package_kind(facts.project_type, pathway)
    artifacts = list(catalog.base(kind, pathway, facts))

    applied: list[str] = []
    for name, rule in RULES:
        adjusted = rule(artifacts, facts, catalog)
        if adjusted is not None:
            artifacts = adjusted
            applied.append(name)

    if catalog.finalize is not None:
        artifacts = catalog.finalize(artifacts)

    return RequirementSet(
        package_kind=kind,
        pathway=pathway,
        required=[a for a in artifacts if a.required],
        optional=[a for a in artifacts if not a.required],
        applied_rules=applied,
        notes=list(catalog.notes(kind, facts)) if catalog.notes is not None else [],
    )


def load_classification_facts(obj: Any) -> ClassificationFacts:
    """Parse facts from an external payload after checking the classification_facts_v1 contract."""
    code, msg = contracts_validate.validate_classification_facts(obj)
    if code != contracts_validate.EXIT_OK:
        raise ContractInvalid(msg)
    return ClassificationFacts.from_json_obj(obj)
