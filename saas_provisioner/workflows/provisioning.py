"""Phased provisioning pipeline with rollback on failure."""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from ..domains.errors import ProvisioningError
from ..domains.ledger import CompensationLedger
from ..domains.models import (
    INFRASTRUCTURE_PROVIDERS,
    Environment,
    ProviderName,
    ProviderResult,
    ProvisionFlags,
    ProvisionRequest,
)
from ..domains.resolver import resolve
from ..providers.base import Provider, ProviderContext
from ..providers.registry import build_providers
from .ci_setup import setup_ci as run_ci_setup
from .env_export import export_env as write_env_files

logger = logging.getLogger(__name__)


@dataclass
class ProvisionReport:
    """What a successful run produced, per environment."""
    results: Dict[str, Dict[ProviderName, ProviderResult]] = field(default_factory=dict)
    repositories: List[str] = field(default_factory=list)
    env_files: List[Path] = field(default_factory=list)

    def record(self, env: str, result: ProviderResult) -> None:
        self.results.setdefault(env, {})[result.provider] = result


class Provisioner:
    """
    Runs the provisioning phases for a project.

    Phases: preflight credential check, vaults, infrastructure (concurrent
    within an environment), CI/CD, env file export. Any failure replays the
    compensation ledger and raises ProvisioningError.
    """

    def __init__(self, context: ProviderContext, providers: Optional[Dict[ProviderName, Provider]] = None):
        self.context = context
        self.providers = providers if providers is not None else build_providers(context)

    async def _preflight(self, order: Sequence[ProviderName]) -> None:
        logger.info("Checking credentials...")
        for name in order:
            await self.providers[name].check_credentials()
            logger.debug(f"  {name}: ok")

    async def _run_provider(self, name: ProviderName, request: ProvisionRequest,
                            ledger: CompensationLedger) -> ProviderResult:
        try:
            outcome = await self.providers[name].provision(request)
        except Exception as e:
            ledger.extend(getattr(e, "compensations", []))
            raise
        ledger.extend(outcome.compensations)
        return outcome.result

    async def _infrastructure(self, request: ProvisionRequest, names: List[ProviderName],
                              ledger: CompensationLedger, report: ProvisionReport) -> None:
        """Run one environment's infrastructure providers concurrently and settle all of them."""
        settled = await asyncio.gather(
            *(self._run_provider(name, request, ledger) for name in names),
            return_exceptions=True,
        )

        failures = []
        for name, outcome in zip(names, settled):
            if isinstance(outcome, BaseException):
                logger.error(f"  {name} failed: {outcome}")
                failures.append(outcome)
            else:
                report.record(request.env, outcome)
                logger.info(f"  {name}: {outcome.resource_name} ({'created' if outcome.created else 'reused'})")

        if failures:
            raise failures[0]

    async def provision(self, project: str, environments: Iterable[str],
                        components: Optional[Iterable[ProviderName]] = None,
                        flags: Optional[ProvisionFlags] = None,
                        setup_ci: bool = True, export_env: bool = False,
                        project_dir: Optional[Path] = None) -> ProvisionReport:
        """
        Provision the selected components for each environment.

        Args:
            project: Project name; resource names derive from it
            environments: "dev" and/or "prod"
            components: Providers to run; empty or None means all
            flags: verbose / dry_run / force
            setup_ci: Run the CI/CD phase when source-control is selected
            export_env: Write .env files from the vault after provisioning
            project_dir: Where templates and .env files go (default: cwd)

        Raises:
            ProvisioningError: After rolling back everything this run created
        """
        flags = flags or ProvisionFlags()
        project_dir = Path(project_dir or Path.cwd())
        order = resolve(components)
        requests = [ProvisionRequest(project, Environment(env), flags) for env in environments]
        infra = [name for name in order if name in INFRASTRUCTURE_PROVIDERS]
        report = ProvisionReport()
        ledger = CompensationLedger()

        logger.info(f"Provisioning {project} ({', '.join(r.env for r in requests)}): "
                    f"{', '.join(name.value for name in order)}")
        if flags.dry_run:
            logger.info("[DRY RUN] No changes will be made")

        try:
            if not flags.dry_run:
                await self._preflight(order)

            if ProviderName.SECRETS_VAULT in order:
                for request in requests:
                    logger.info(f"Vault ({request.env})")
                    report.record(request.env, await self._run_provider(ProviderName.SECRETS_VAULT, request, ledger))

            if infra:
                for request in requests:
                    logger.info(f"Infrastructure ({request.env})")
                    await self._infrastructure(request, infra, ledger, report)

            if ProviderName.SOURCE_CONTROL in order and setup_ci:
                report.repositories = await run_ci_setup(
                    self.providers[ProviderName.SOURCE_CONTROL], requests, project_dir, ledger
                )

            if export_env:
                for request in requests:
                    if flags.dry_run:
                        logger.info(f"  [DRY RUN] Would write .env files for {request.env}")
                        continue
                    report.env_files += await write_env_files(self.context.store, project, request.env, project_dir)

        except ProvisioningError:
            await ledger.replay()
            raise
        except Exception as e:
            compensations = ledger.entries
            failed = await ledger.replay()
            provider = getattr(e, "provider", None)
            raise ProvisioningError(
                f"Provisioning failed{f' at {provider}' if provider else ''}: {e}",
                provider=provider,
                compensations=compensations,
                failed_rollbacks=failed,
            ) from e

        ledger.discard()
        logger.info("Provisioning complete")
        return report
