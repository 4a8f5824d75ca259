from __future__ import annotations

import argparse
import sys
from pathlib import Path

import yaml

from qi_planner.core.repo import policies_dir
from qi_planner.policies.resolve import load_checkpoint_policy

EXIT_OK = 0
EXIT_USAGE_OR_ERROR = 1
EXIT_INVALID = 2


def validate_file(yaml_path: Path) -> tuple[int, str]:
    """Validate a checkpoint policy YAML file. Returns (exit_code, message)."""
    try:
        policy = load_checkpoint_policy(yaml_path)
    except yaml.YAMLError as e:
        return (EXIT_USAGE_OR_ERROR, f"ERROR: {yaml_path.name}: invalid YAML: {e}")
    except OSError as e:
        return (EXIT_USAGE_OR_ERROR, f"ERROR: {e}")
    except ValueError as e:
        return (EXIT_INVALID, f"INVALID: {yaml_path.name}: {e}")
    return (EXIT_OK, f"OK: {yaml_path.name} ({policy.policy_id})")


def validate_directory(directory: Path) -> int:
    """Validate all policy YAML files directly under a directory (examples/ excluded)."""
    if not directory.is_dir():
        print(f"ERROR: not a directory: {directory}", file=sys.stderr)
        return EXIT_USAGE_OR_ERROR

    ok = 0
    invalid = 0
    for p in sorted(q for q in directory.glob("*.y*ml") if q.is_file()):
        code, msg = validate_file(p)
        if code == EXIT_OK:
            ok += 1
            print(msg)
        elif code == EXIT_INVALID:
            invalid += 1
            print(msg, file=sys.stderr)
        else:
            print(msg, file=sys.stderr)
            return EXIT_USAGE_OR_ERROR

    print(f"SUMMARY: OK={ok} INVALID={invalid}")
    return EXIT_INVALID if invalid else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m qi_planner.policies.validate")
    parser.add_argument(
        "yaml_path",
        nargs="?",
        help="Path to a checkpoint policy YAML file or a policies directory (default: repo policies/).",
    )
    args = parser.parse_args(argv)

    p = Path(args.yaml_path) if args.yaml_path else policies_dir()
    if not p.exists():
        print(f"ERROR: path does not exist: {p}", file=sys.stderr)
        return EXIT_USAGE_OR_ERROR
    if p.is_dir():
        return validate_directory(p)

    code, msg = validate_file(p)
    print(msg, file=sys.stdout if code == EXIT_OK else sys.stderr)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
