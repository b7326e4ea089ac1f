"""Deterministic resource naming and cleanup filter matching.

Every external resource is looked up by a name derived only from the project
and environment, which is what makes re-running provisioning idempotent.
"""
import re
from typing import Optional

from .models import CleanupFilter

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9_-] with '-'."""
    return _UNSAFE_CHARS.sub("-", name)


def project_slug(project: str) -> str:
    return sanitize(project).lower()


def vault_name(project: str, env: str) -> str:
    """Vault holding every provisioned credential of one environment."""
    return f"{project_slug(project)}-{env}"


def database_name(project: str, env: str) -> str:
    return f"{project_slug(project)}-{env}"


def backend_app_name(project: str, env: str) -> str:
    return f"{project_slug(project)}-api-{env}"


def frontend_site_name(project: str, env: str) -> str:
    return f"{project_slug(project)}-frontend-{env}"


def email_key_name(project: str, env: str) -> str:
    return f"{project_slug(project)}-{env}"


def repository_name(project: str, owner: Optional[str] = None) -> str:
    slug = project_slug(project)
    return f"{owner}/{slug}" if owner else slug


def email_sender(project: str, env: str) -> str:
    slug = project_slug(project)
    if env == "prod":
        return f"no-reply@{slug}.com"
    return f"no-reply@{env}.{slug}.com"


def infer_environment(name: str) -> str:
    """Guess dev/prod from a resource name suffix."""
    lowered = name.lower()
    if lowered.endswith("-dev"):
        return "dev"
    if lowered.endswith("-prod"):
        return "prod"
    return "unknown"


def matches_filter(name: str, filter: Optional[CleanupFilter]) -> bool:
    """
    Decide whether a listed resource name passes a cleanup filter.

    A pattern wins over project/env and is a case-insensitive substring match.
    A project with an env matches `p-e` and one-segment component names such as
    `p-api-e`. A project alone matches the `p-` prefix. Either form also matches
    the bare project slug, which names the repository both environments share.
    An empty filter matches everything.
    """
    if filter is None or filter.is_empty:
        return True

    if filter.pattern:
        return filter.pattern.lower() in name.lower()

    slug = project_slug(filter.project)
    lowered = name.lower()
    if lowered == slug:
        return True
    if filter.env:
        return re.fullmatch(rf"{re.escape(slug)}(-[a-z0-9_]+)?-{re.escape(filter.env)}", lowered) is not None
    return lowered.startswith(f"{slug}-")
