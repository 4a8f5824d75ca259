from __future__ import annotations

import pytest

from qi_planner.projectstore.errors import ContractInvalid
from qi_planner.scheduler.determination import (
    ClassificationFacts,
    PackageKind,
    load_classification_facts,
    select_package_kind,
)
from qi_planner.scheduler.documents import (
    CONSENT_FORM,
    DATA_MANAGEMENT_PLAN,
    EMF_GRANT_APPLICATION,
    PARTICIPANT_INFO_SHEET,
    PROTOCOL,
    SITE_ASSESSMENT_FORM,
    determine_documents,
    plan_document_package,
    validate_document_package,
)
from qi_planner.scheduler.pathway import EthicsPathway, ProjectType, RiskLevel


def _facts(**kw) -> ClassificationFacts:
    kw.setdefault("project_type", ProjectType.RESEARCH)
    return ClassificationFacts(**kw)


def _ids(artifacts) -> list[str]:
    return [a.artifact_id for a in artifacts]


def test_qi_without_sites_or_funding_is_minimal_with_nothing_required() -> None:
    reqs = determine_documents(_facts(project_type=ProjectType.QI, site_count=1))
    assert reqs.package_kind == PackageKind.MINIMAL
    assert reqs.pathway == EthicsPathway.QI_REGISTRATION
    assert reqs.required == []
    assert _ids(reqs.optional) == [PROTOCOL, DATA_MANAGEMENT_PLAN]
    assert reqs.applied_rules == []


def test_project_type_decides_before_pathway() -> None:
    assert select_package_kind(ProjectType.QI, EthicsPathway.FULL_HREC_REVIEW) == PackageKind.MINIMAL
    assert select_package_kind(ProjectType.RESEARCH, EthicsPathway.LOW_RISK_RESEARCH) == PackageKind.STANDARD
    assert select_package_kind(ProjectType.RESEARCH, EthicsPathway.FULL_HREC_REVIEW) == PackageKind.FULL_REVIEW
    assert select_package_kind(ProjectType.HYBRID, EthicsPathway.HYBRID_REVIEW) == PackageKind.HYBRID
    reqs = determine_documents(_facts(project_type=ProjectType.QI, pathway=EthicsPathway.FULL_HREC_REVIEW))
    assert reqs.package_kind == PackageKind.MINIMAL


def test_low_risk_consent_waived_demotes_consent_documents() -> None:
    reqs = determine_documents(_facts(risk_level=RiskLevel.LOW, consent_waived=True))
    assert reqs.package_kind == PackageKind.STANDARD
    assert CONSENT_FORM in _ids(reqs.optional)
    assert PARTICIPANT_INFO_SHEET in _ids(reqs.optional)
    assert _ids(reqs.required) == [PROTOCOL, DATA_MANAGEMENT_PLAN]
    assert reqs.applied_rules == ["consent_waiver"]
    consent = next(a for a in reqs.optional if a.artifact_id == CONSENT_FORM)
    assert consent.rationale == "Consent waiver approved - formal consent form not required"
    assert consent.tier == "OPTIONAL"


def test_full_review_with_two_sites_requires_site_assessment() -> None:
    reqs = determine_documents(_facts(risk_level=RiskLevel.HIGH, site_count=2))
    assert reqs.package_kind == PackageKind.FULL_REVIEW
    assert SITE_ASSESSMENT_FORM in _ids(reqs.required)
    assert SITE_ASSESSMENT_FORM not in _ids(reqs.optional)
    assert reqs.applied_rules == ["multisite"]


def test_multisite_appends_site_assessment_when_absent() -> None:
    reqs = determine_documents(_facts(risk_level=RiskLevel.LOW, site_count=3))
    assert _ids(reqs.required)[-1] == SITE_ASSESSMENT_FORM


def test_funding_forces_grant_application() -> None:
    reqs = determine_documents(_facts(risk_level=RiskLevel.LOW, funding_scheme="EMF Jumpstart"))
    assert _ids(reqs.required)[-1] == EMF_GRANT_APPLICATION
    assert reqs.applied_rules == ["funding_scheme"]
    assert any("EMF Jumpstart" in n for n in reqs.notes)


def test_vulnerable_population_annotates_required_consent_only() -> None:
    suffix = " - Enhanced consent required for vulnerable population"
    reqs = determine_documents(_facts(risk_level=RiskLevel.HIGH, vulnerable_population=True))
    consent = next(a for a in reqs.required if a.artifact_id == CONSENT_FORM)
    assert consent.rationale.endswith(suffix)
    assert _ids(reqs.artifacts) == _ids(determine_documents(_facts(risk_level=RiskLevel.HIGH)).artifacts)

    waived = determine_documents(_facts(risk_level=RiskLevel.HIGH, consent_waived=True, vulnerable_population=True))
    assert all(not a.rationale.endswith(suffix) for a in waived.artifacts)
    assert waived.applied_rules == ["consent_waiver", "vulnerable_population"]


def test_determination_is_deterministic() -> None:
    facts = _facts(
        risk_level=RiskLevel.MODERATE,
        site_count=2,
        funding_scheme="EMF",
        consent_waived=True,
        vulnerable_population=True,
    )
    assert determine_documents(facts) == determine_documents(facts)
    assert determine_documents(facts).to_json_obj() == determine_documents(facts).to_json_obj()


def test_plan_standard_package() -> None:
    pkg = plan_document_package(_facts(risk_level=RiskLevel.LOW))
    assert pkg.generation_order == [PROTOCOL, DATA_MANAGEMENT_PLAN, PARTICIPANT_INFO_SHEET, CONSENT_FORM]
    assert pkg.submission_order == [PROTOCOL, PARTICIPANT_INFO_SHEET, CONSENT_FORM, DATA_MANAGEMENT_PLAN]
    assert pkg.estimated_pages == 36
    assert pkg.warnings == []
    obj = pkg.to_json_obj()
    assert obj["package_kind"] == "standard"
    assert obj["generation_order"][0] == PROTOCOL


def test_validate_document_package() -> None:
    pkg = plan_document_package(_facts(risk_level=RiskLevel.LOW))
    v = validate_document_package(pkg, [PROTOCOL, CONSENT_FORM])
    assert not v.complete
    assert v.missing == [PARTICIPANT_INFO_SHEET, DATA_MANAGEMENT_PLAN]
    assert v.warnings == ["CONSENT_FORM depends on PARTICIPANT_INFO_SHEET which is not generated"]
    assert validate_document_package(pkg, pkg.generation_order).complete


def test_facts_from_json_derive_pathway() -> None:
    facts = ClassificationFacts.from_json_obj(
        {"project_type": "research", "risk_level": "moderate", "institution": "qh_rmh", "site_count": 2}
    )
    assert facts.effective_pathway() == EthicsPathway.FULL_HREC_REVIEW
    assert facts.institution == "QH_RMH"
    assert facts.data_types == ("DE_IDENTIFIED",)
    assert facts.multisite
    assert not facts.has_funding


def test_load_classification_facts_checks_contract() -> None:
    facts = load_classification_facts({"project_type": "HYBRID", "funding_scheme": "MRFF"})
    assert facts.effective_pathway() == EthicsPathway.HYBRID_REVIEW
    assert facts.has_funding
    with pytest.raises(ContractInvalid):
        load_classification_facts({"project_type": "AUDIT"})
    with pytest.raises(ContractInvalid):
        load_classification_facts({"project_type": "QI", "sites": 2})
