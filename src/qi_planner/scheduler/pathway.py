from __future__ import annotations

import re
from enum import Enum
from typing import Any


class ProjectType(str, Enum):
    QI = "QI"
    RESEARCH = "RESEARCH"
    HYBRID = "HYBRID"


class RiskLevel(str, Enum):
    NEGLIGIBLE = "NEGLIGIBLE"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


class EthicsPathway(str, Enum):
    QI_REGISTRATION = "QI_REGISTRATION"
    LOW_RISK_RESEARCH = "LOW_RISK_RESEARCH"
    FULL_HREC_REVIEW = "FULL_HREC_REVIEW"
    HYBRID_REVIEW = "HYBRID_REVIEW"


_BASE_TIMELINES: dict[EthicsPathway, str] = {
    EthicsPathway.QI_REGISTRATION: "2-4 weeks",
    EthicsPathway.LOW_RISK_RESEARCH: "4-6 weeks",
    EthicsPathway.FULL_HREC_REVIEW: "8-16 weeks",
    EthicsPathway.HYBRID_REVIEW: "10-16 weeks",
}


def _parse_enum(enum_cls: type[Enum], value: Any, what: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    s = str(value or "").strip().upper()
    try:
        return enum_cls(s)
    except ValueError:
        raise ValueError(f"unknown {what}: {value!r}") from None


def parse_project_type(value: Any) -> ProjectType:
    return _parse_enum(ProjectType, value, "project type")


def parse_risk_level(value: Any) -> RiskLevel:
    return _parse_enum(RiskLevel, value, "risk level")


def parse_pathway(value: Any) -> EthicsPathway:
    return _parse_enum(EthicsPathway, value, "ethics pathway")


def derive_pathway(project_type: ProjectType, risk_level: RiskLevel) -> EthicsPathway:
    if project_type == ProjectType.HYBRID:
        return EthicsPathway.HYBRID_REVIEW
    if project_type == ProjectType.QI:
        return EthicsPathway.QI_REGISTRATION
    if risk_level in (RiskLevel.NEGLIGIBLE, RiskLevel.LOW):
        return EthicsPathway.LOW_RISK_RESEARCH
    return EthicsPathway.FULL_HREC_REVIEW


def approval_body(pathway: EthicsPathway, multisite: bool) -> str:
    if pathway == EthicsPathway.QI_REGISTRATION:
        return "UNIT_DIRECTOR"
    if pathway == EthicsPathway.LOW_RISK_RESEARCH:
        return "MN_HREC" if multisite else "HOSPITAL_LNR"
    if pathway == EthicsPathway.FULL_HREC_REVIEW:
        # Multi-site studies go to the network lead HREC.
        return "RMH_HREC" if multisite else "MN_HREC"
    return "HYBRID_REVIEW"


def estimate_approval_timeline(pathway: EthicsPathway, multisite: bool) -> str:
    """Base review window per pathway; multi-site adds 2 weeks to the lower bound and 4 to the upper."""
    timeline = _BASE_TIMELINES[pathway]
    if multisite:
        m = re.match(r"(\d+)-(\d+)", timeline)
        if m:
            timeline = f"{int(m.group(1)) + 2}-{int(m.group(2)) + 4} weeks (multi-site)"
    return timeline


def requires_hrec(pathway: EthicsPathway) -> bool:
    return pathway in (EthicsPathway.FULL_HREC_REVIEW, EthicsPathway.HYBRID_REVIEW)


def requires_rgo(pathway: EthicsPathway) -> bool:
    return pathway != EthicsPathway.QI_REGISTRATION


def pathway_summary(pathway: EthicsPathway, *, multisite: bool) -> dict[str, Any]:
    return {
        "pathway": pathway.value,
        "approval_body": approval_body(pathway, multisite),
        "requires_hrec": requires_hrec(pathway),
        "requires_rgo": requires_rgo(pathway),
        "estimated_timeline": estimate_approval_timeline(pathway, multisite),
        "status": "NOT_STARTED",
    }
