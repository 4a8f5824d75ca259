from __future__ import annotations

import os
from pathlib import Path

# A directory is the asset root only if it ships both of these.
CONTRACT_MARKER = Path("contracts") / "project_schema_v1.json"
POLICY_MARKER = Path("policies") / "checkpoint_policy_v1.yaml"


def _candidates() -> list[Path]:
    out: list[Path] = []
    env_root = os.getenv("QIP_REPO")
    if env_root and env_root.strip():
        out.append(Path(env_root))
    here = Path(__file__).resolve()
    out.extend(here.parents)
    cwd = Path.cwd()
    out.append(cwd)
    out.extend(cwd.parents)
    return out


def find_repo_root() -> Path:
    """Locate the directory holding `contracts/` and `policies/`.

    Order: QIP_REPO, then the installed package's parents, then the cwd and its
    parents. Unrelated `contracts/` or `policies/` directories are skipped.
    """
    for c in _candidates():
        if (c / CONTRACT_MARKER).is_file() and (c / POLICY_MARKER).is_file():
            return c
    raise FileNotFoundError(f"no directory with {CONTRACT_MARKER.as_posix()} and {POLICY_MARKER.as_posix()} found")


def contracts_dir() -> Path:
    return find_repo_root() / "contracts"


def policies_dir() -> Path:
    return find_repo_root() / "policies"
