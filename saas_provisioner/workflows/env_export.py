"""Write .env files for the application from an environment vault."""
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from ..domains.naming import vault_name
from ..secrets.domains.store import SecretStore

logger = logging.getLogger(__name__)


class EnvReference(NamedTuple):
    key: str
    item: str
    section: str
    field: str
    target: str  # server or client


ENV_REFERENCES: List[EnvReference] = [
    EnvReference("DATABASE_URL", "Database", "Database", "database_url", "server"),
    EnvReference("JWT_SECRET", "Auth", "Secrets", "jwt_secret", "server"),
    EnvReference("RESEND_API_KEY", "Email", "Credentials", "api_key", "server"),
    EnvReference("EMAIL_FROM", "Email", "Configuration", "email_from", "server"),
    EnvReference("CAPROVER_URL", "BackendHost", "Server", "url", "server"),
    EnvReference("CAPROVER_APP_TOKEN", "BackendHost", "Deployment", "app_token", "server"),
    EnvReference("API_URL", "BackendHost", "URLs", "api_url", "server"),
    EnvReference("APP_URL", "FrontendHost", "URLs", "app_url", "server"),
    EnvReference("WASP_SERVER_URL", "BackendHost", "URLs", "api_url", "server"),
    EnvReference("WASP_WEB_CLIENT_URL", "FrontendHost", "URLs", "app_url", "server"),
    EnvReference("REACT_APP_API_URL", "BackendHost", "URLs", "api_url", "client"),
]

REQUIRED_SERVER_KEYS = ("JWT_SECRET", "DATABASE_URL")

_NEEDS_QUOTES = re.compile(r"""\s|[#'"\\]""")


def escape_value(value: str) -> str:
    """Quote a .env value when it contains whitespace, '#', quotes or backslashes."""
    needs_quotes = bool(_NEEDS_QUOTES.search(value))
    clean = value.replace("\n", "\\n")
    return json.dumps(clean) if needs_quotes else clean


def env_file_names(env: str) -> Tuple[str, str]:
    """(server, client) file names; prod files carry a .prod suffix."""
    if env == "prod":
        return ".env.server.prod", ".env.client.prod"
    return ".env.server", ".env.client"


def render_env(entries: List[Tuple[str, str]]) -> str:
    return "".join(f"{key}={escape_value(value)}\n" for key, value in entries)


def write_private(path: Path, content: str) -> None:
    """Replace `path` with `content`, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(str(tmp), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
    try:
        os.write(fd, content.encode("utf-8"))
    finally:
        os.close(fd)
    try:
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


async def collect_env(store: SecretStore, vault: str) -> Dict[str, List[Tuple[str, str]]]:
    """Read every known reference from the vault, skipping absent values."""
    collected: Dict[str, List[Tuple[str, str]]] = {"server": [], "client": []}
    for ref in ENV_REFERENCES:
        value = await store.read_field(vault, ref.item, ref.section, ref.field)
        if value:
            collected[ref.target].append((ref.key, value))
        else:
            logger.debug(f"  {ref.key} not in vault, skipping")
    return collected


async def export_env(store: SecretStore, project: str, env: str, project_dir: Path,
                     vault: Optional[str] = None) -> List[Path]:
    """
    Write the server and client .env files for one environment.

    Returns:
        Paths of the files written
    """
    vault = vault or vault_name(project, env)
    collected = await collect_env(store, vault)

    present = {key for key, _ in collected["server"]}
    missing = [key for key in REQUIRED_SERVER_KEYS if key not in present]
    if missing:
        logger.warning(f"  Missing important keys for {env}: {', '.join(missing)}")

    written = []
    project_dir = Path(project_dir)
    for target, file_name in zip(("server", "client"), env_file_names(env)):
        path = project_dir / file_name
        write_private(path, render_env(collected[target]))
        logger.info(f"  Wrote {path} ({len(collected[target])} vars)")
        written.append(path)
    return written
