"""Input validation for CLI arguments."""
import re
import sys
from pathlib import Path
from typing import List

ENVIRONMENT_CHOICES = ("dev", "prod", "all")


def validate_project_name(name: str) -> None:
    """
    Validate a project name.

    Resource names are derived from it, so it must start with a letter or
    digit and contain only letters, digits, underscores, hyphens, dots or
    spaces (dots and spaces become hyphens in resource names).

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name or not name.strip():
        print("Error: Project name cannot be empty", file=sys.stderr)
        sys.exit(2)

    if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9_. -]*$', name):
        print(f"Error: Invalid project name '{name}'", file=sys.stderr)
        print("\nAllowed characters: letters, numbers, underscores (_), hyphens (-), dots, spaces", file=sys.stderr)
        print("\nExamples of valid names:", file=sys.stderr)
        print("  ✓ my-saas", file=sys.stderr)
        print("  ✓ Acme_App", file=sys.stderr)
        print("\nExamples of invalid names:", file=sys.stderr)
        print("  ✗ -leading-hyphen", file=sys.stderr)
        print("  ✗ app@prod (contains @)", file=sys.stderr)
        sys.exit(2)


def parse_environments(env: str) -> List[str]:
    """Expand --env into the environments to run, dev before prod."""
    if env not in ENVIRONMENT_CHOICES:
        print(f"Error: Invalid environment '{env}' (choose from: {', '.join(ENVIRONMENT_CHOICES)})", file=sys.stderr)
        sys.exit(2)
    return ["dev", "prod"] if env == "all" else [env]


def parse_ids(value: str) -> List[str]:
    """
    Split a comma-separated --ids value.

    Raises:
        SystemExit with code 2 if no ID remains after trimming
    """
    ids = [part.strip() for part in (value or "").split(",") if part.strip()]
    if not ids:
        print("Error: --ids needs at least one resource ID (e.g. --ids abc123,def456)", file=sys.stderr)
        sys.exit(2)
    return ids


def validate_project_dir(path: str) -> Path:
    project_dir = Path(path).expanduser().resolve()
    if project_dir.exists() and not project_dir.is_dir():
        print(f"Error: Project directory is not a directory: {project_dir}", file=sys.stderr)
        sys.exit(2)
    return project_dir
