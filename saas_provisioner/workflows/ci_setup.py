"""CI/CD setup: repository, deploy secrets and workflow templates."""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from ..domains.ledger import CompensationLedger
from ..domains.models import Compensation, ItemField, ItemSection, ProvisionRequest
from ..domains.naming import project_slug, vault_name
from ..providers.source_control import SourceControlProvider, ci_secret_names

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

# template subdirectory -> destination inside the project
TEMPLATE_TARGETS = {
    "workflows": Path(".github") / "workflows",
    "scripts": Path("scripts"),
}

PROJECT_PLACEHOLDER = "{{PROJECT_NAME}}"


def service_account_name(project: str, env: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{project_slug(project)}-sa-{env}-github-v{stamp}"


async def setup_ci_secrets(provider: SourceControlProvider, request: ProvisionRequest, repo: str,
                           ledger: CompensationLedger) -> bool:
    """
    Give the repository read access to the environment vault.

    Returns:
        True when secrets were (re)written, False when existing ones were kept
    """
    env = request.env
    existing = set(await provider.gh.secret_names(repo))
    token_secret, vault_secret = ci_secret_names(env)
    if not request.force and {token_secret, vault_secret} <= existing:
        logger.info(f"  GitHub secrets for {env} already exist, skipping (use --force to rotate)")
        return False

    vault = vault_name(request.project, env)
    sa_name = service_account_name(request.project, env)
    token = await provider.store.create_service_account(sa_name, [vault])

    for secret_name, value in ((token_secret, token), (vault_secret, vault)):
        await provider.gh.set_secret(repo, secret_name, value)
        logger.info(f"  Set GitHub secret {secret_name}")
        # a secret the repository already had is overwritten, never rolled back
        if secret_name in existing:
            continue

        async def remove(secret_name=secret_name) -> None:
            await provider.gh.delete_secret(repo, secret_name)

        ledger.append(Compensation(provider.name.value, f"Delete GitHub secret {secret_name} on {repo}", remove))

    await provider.write_result(request, [
        ItemSection("ServiceAccount", [ItemField("service_account_name", sa_name, "STRING")]),
    ])
    return True


def render_template(content: str, project: str) -> str:
    return content.replace(PROJECT_PLACEHOLDER, project_slug(project))


def copy_templates(project: str, project_dir: Path, force: bool, ledger: CompensationLedger,
                   template_dir: Optional[Path] = None) -> List[Path]:
    """
    Copy workflow and script templates into the project.

    Existing files are kept unless force. Each created file gets a
    compensation that removes it; an overwritten file gets one that restores
    its previous content.

    Returns:
        Paths written
    """
    template_dir = template_dir or TEMPLATE_DIR
    project_dir = Path(project_dir)
    written: List[Path] = []

    for subdir, target in TEMPLATE_TARGETS.items():
        source_dir = template_dir / subdir
        if not source_dir.is_dir():
            logger.debug(f"  No {subdir} templates in {template_dir}")
            continue

        for source in sorted(p for p in source_dir.iterdir() if p.is_file()):
            dest = project_dir / target / source.name
            previous: Optional[str] = None
            if dest.exists():
                if not force:
                    logger.debug(f"  Keeping existing {dest}")
                    continue
                previous = dest.read_text()

            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(render_template(source.read_text(), project))
            if source.suffix == ".sh":
                dest.chmod(0o755)
            written.append(dest)
            ledger.append(_file_compensation(dest, previous))
            logger.info(f"  {'Updated' if previous is not None else 'Created'} {dest.relative_to(project_dir)}")

    return written


def _file_compensation(path: Path, previous: Optional[str]) -> Compensation:
    async def undo() -> None:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            path.write_text(previous)

    verb = "Remove" if previous is None else "Restore"
    return Compensation("source-control", f"{verb} {path}", undo)


async def setup_ci(provider: SourceControlProvider, requests: Sequence[ProvisionRequest],
                   project_dir: Path, ledger: CompensationLedger) -> List[str]:
    """
    Run the CI/CD phase for every environment, then copy templates once.

    Compensations go straight into the ledger as each step completes.

    Returns:
        Repository names ensured
    """
    repos = []
    for request in requests:
        logger.info(f"CI/CD setup ({request.env})")
        try:
            outcome = await provider.provision(request)
        except Exception as e:
            ledger.extend(getattr(e, "compensations", []))
            raise
        ledger.extend(outcome.compensations)
        repo = outcome.result.resource_name
        repos.append(repo)

        if request.dry_run:
            logger.info(f"  [DRY RUN] Would set GitHub secrets {', '.join(ci_secret_names(request.env))}")
            continue
        await setup_ci_secrets(provider, request, repo, ledger)

    if requests and not requests[0].dry_run:
        copy_templates(requests[0].project, project_dir, requests[0].force, ledger)
    elif requests:
        logger.info(f"  [DRY RUN] Would copy workflow templates into {project_dir}")
    return repos
