from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from qi_planner.core.repo import policies_dir
from qi_planner.pipeline.status import PIPELINE_STAGES, PipelineStage, parse_stage

CHECKPOINT_POLICY_FILE = "checkpoint_policy_v1.yaml"

DEFAULT_WEBHOOK_SUFFIXES: dict[PipelineStage, str] = {
    PipelineStage.INTAKE: "intake-approved",
    PipelineStage.RESEARCH: "research-approved",
    PipelineStage.METHODOLOGY: "methods-approved",
    PipelineStage.ETHICS: "ethics-approved",
    PipelineStage.DOCUMENTS: "documents-approved",
}


@dataclass(frozen=True)
class CheckpointPolicy:
    policy_id: str = "checkpoint_policy_v1"
    max_cas_retries: int = 3
    audit_write_retries: int = 2
    webhook_suffixes: dict[PipelineStage, str] = field(default_factory=lambda: dict(DEFAULT_WEBHOOK_SUFFIXES))
    sha256: str | None = None

    def stage_for_suffix(self, suffix: str) -> PipelineStage:
        s = str(suffix or "").strip().lower()
        for stage, sfx in self.webhook_suffixes.items():
            if sfx == s:
                return stage
        raise ValueError(f"unknown checkpoint webhook suffix: {suffix!r}")

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "max_cas_retries": self.max_cas_retries,
            "audit_write_retries": self.audit_write_retries,
            "webhook_suffixes": {s.value: self.webhook_suffixes[s] for s in PIPELINE_STAGES},
            "sha256": self.sha256,
        }


def default_checkpoint_policy_path() -> Path:
    p = os.getenv("QIP_CHECKPOINT_POLICY")
    if p and p.strip():
        return Path(p)
    return policies_dir() / CHECKPOINT_POLICY_FILE


def _non_negative_int(params: dict[str, Any], key: str) -> int:
    v = params.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ValueError(f"checkpoint_policy params.{key} must be a non-negative integer")
    return v


def load_checkpoint_policy(path: Path | None = None) -> CheckpointPolicy:
    p = path or default_checkpoint_policy_path()
    raw_bytes = p.read_bytes()
    doc = yaml.safe_load(raw_bytes)
    if not isinstance(doc, dict):
        raise ValueError("checkpoint_policy YAML must be a mapping/object")
    if doc.get("policy_version") != "v1":
        raise ValueError('checkpoint_policy policy_version must be "v1"')
    pid = doc.get("policy_id")
    if not isinstance(pid, str) or not pid.strip():
        raise ValueError("checkpoint_policy policy_id must be a non-empty string")

    params = doc.get("params")
    if not isinstance(params, dict):
        raise ValueError("checkpoint_policy params must be an object")

    suffix_map = params.get("webhook_suffixes")
    if not isinstance(suffix_map, dict):
        raise ValueError("checkpoint_policy params.webhook_suffixes must be an object")
    suffixes: dict[PipelineStage, str] = {}
    for k, v in suffix_map.items():
        stage = parse_stage(k)
        if not isinstance(v, str) or not v.strip():
            raise ValueError(f"checkpoint_policy webhook suffix for {stage.value!r} must be a non-empty string")
        suffixes[stage] = v.strip().lower()
    if set(suffixes) != set(PipelineStage):
        missing = [s.value for s in PIPELINE_STAGES if s not in suffixes]
        raise ValueError(f"checkpoint_policy webhook_suffixes missing stages: {missing}")
    if len(set(suffixes.values())) != len(suffixes):
        raise ValueError("checkpoint_policy webhook_suffixes must be unique per stage")

    return CheckpointPolicy(
        policy_id=pid.strip(),
        max_cas_retries=_non_negative_int(params, "max_cas_retries"),
        audit_write_retries=_non_negative_int(params, "audit_write_retries"),
        webhook_suffixes=suffixes,
        sha256=hashlib.sha256(raw_bytes).hexdigest(),
    )
