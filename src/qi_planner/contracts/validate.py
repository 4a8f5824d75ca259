from __future__ import annotations

import argparse
import json
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from qi_planner.core.repo import contracts_dir

EXIT_OK = 0
EXIT_USAGE_OR_ERROR = 1
EXIT_INVALID = 2

# schema_version discriminator -> schema file under contracts/
SCHEMA_FILES = {
    "project_v1": "project_schema_v1.json",
    "audit_entry_v1": "audit_entry_schema_v1.json",
    "classification_facts_v1": "classification_facts_schema_v1.json",
}


@lru_cache(maxsize=4)
def _registry(cdir: Path) -> Registry:
    """All contract schemas keyed by `$id`, so audit entries can reference project defs."""
    resources = []
    for filename in SCHEMA_FILES.values():
        schema = json.loads((cdir / filename).read_text(encoding="utf-8"))
        resources.append((schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=16)
def _validator(cdir: Path, schema_version: str) -> Draft202012Validator:
    schema = json.loads((cdir / SCHEMA_FILES[schema_version]).read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_registry(cdir))


def _pointer(err: ValidationError) -> str:
    tokens = [str(p).replace("~", "~0").replace("/", "~1") for p in err.absolute_path]
    return "/" + "/".join(tokens)


def _reason(err: ValidationError) -> str:
    if err.instance is None or isinstance(err.instance, (str, int, float, bool)):
        return f"{err.message} (got={err.instance!r})"
    return err.message


def validate_payload(payload: Any, *, schema_version: str | None = None) -> tuple[int, str]:
    """Check a JSON object against its contract; returns (exit_code, message).

    Without `schema_version` the payload's own `schema_version` field picks the contract.
    """
    if not isinstance(payload, dict):
        return (EXIT_INVALID, "INVALID: top-level JSON must be an object")
    sv = schema_version if schema_version is not None else payload.get("schema_version")
    if sv is None:
        return (EXIT_USAGE_OR_ERROR, "ERROR: missing schema_version (or pass --schema-version)")
    if sv not in SCHEMA_FILES:
        return (EXIT_INVALID, f"INVALID: unknown schema_version: {sv!r}")

    validator = _validator(contracts_dir(), sv)
    errors = sorted(validator.iter_errors(payload), key=lambda e: (list(map(str, e.absolute_path)), e.message))
    if errors:
        first = errors[0]
        return (EXIT_INVALID, f"INVALID: {sv} at {_pointer(first)}: {_reason(first)}")
    return (EXIT_OK, f"OK: {sv}")


def validate_json(path: Path, *, schema_version: str | None = None) -> tuple[int, str]:
    return validate_payload(json.loads(path.read_text(encoding="utf-8")), schema_version=schema_version)


def validate_classification_facts(facts: Any) -> tuple[int, str]:
    """Facts usually arrive without a discriminator; the contract is fixed."""
    return validate_payload(facts, schema_version="classification_facts_v1")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m qi_planner.contracts.validate")
    parser.add_argument("json_path", help="JSON file to check (project, audit entry or classification facts).")
    parser.add_argument(
        "--schema-version",
        choices=sorted(SCHEMA_FILES),
        default=None,
        help="Contract to check against (default: the file's schema_version field).",
    )
    args = parser.parse_args(argv)

    path = Path(args.json_path)
    if not path.is_file():
        print(f"ERROR: not a file: {path}", file=sys.stderr)
        return EXIT_USAGE_OR_ERROR
    try:
        code, msg = validate_json(path, schema_version=args.schema_version)
    except json.JSONDecodeError as e:
        print(f"ERROR: invalid JSON: {e}", file=sys.stderr)
        return EXIT_USAGE_OR_ERROR
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE_OR_ERROR
    print(msg, file=sys.stdout if code == EXIT_OK else sys.stderr)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
