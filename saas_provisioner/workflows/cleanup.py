"""Cleanup pipeline: scan, display, gate, delete, summarize."""
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..domains.models import CleanupFilter, CleanupResult, DeleteOutcome, Instance, ProviderName
from ..domains.resolver import PRIORITY
from ..providers.base import Provider

logger = logging.getLogger(__name__)

# Given a component and its listed instances, return the ones to delete.
# An empty list means the operator selected nothing or cancelled.
Selector = Callable[[str, List[Instance]], List[Instance]]


@dataclass
class CleanupOptions:
    filter: CleanupFilter = field(default_factory=CleanupFilter)
    ids: Sequence[str] = ()
    interactive: bool = False
    dry_run: bool = False
    verbose: bool = False

    @property
    def list_only(self) -> bool:
        return not self.interactive and not self.dry_run


def describe_scope(options: CleanupOptions) -> str:
    mode = "listing" if options.list_only else "cleanup"
    flt = options.filter
    if options.ids:
        return f"Selective {mode} ({len(options.ids)} IDs specified)"
    if flt.pattern:
        return f"Filtered {mode} (pattern: \"{flt.pattern}\")"
    if flt.project:
        return f"Project-scoped {mode}: {flt.project} (environment: {flt.env or 'all'})"
    return f"Global {mode} (ALL resources)"


def display_instances(component: str, instances: List[Instance], verbose: bool = False) -> None:
    logger.info(f"  Found {len(instances)} {component} instance(s):")
    for index, instance in enumerate(instances, start=1):
        logger.info(f"  {index}. {instance.name} [{instance.environment}]")
        logger.info(f"     ID: {instance.id}")
        if instance.created_at:
            logger.info(f"     Created: {instance.created_at}")
        if verbose and instance.metadata:
            logger.info(f"     Metadata: {json.dumps(instance.metadata, default=str)}")


class Cleaner:
    """
    Lists provider instances and deletes the ones the operator picks.

    Listing is the default and deletes nothing. Only interactive mode with
    an explicit selection and confirmation deletes; dry-run reports what
    would be deleted.
    """

    def __init__(self, providers: Dict[ProviderName, Provider], select: Optional[Selector] = None):
        self.providers = providers
        self.select = select

    async def _delete_all(self, provider: Provider, instances: List[Instance], result: CleanupResult) -> None:
        for instance in instances:
            logger.info(f"  Deleting {instance.name} ({instance.id})...")
            outcome = await provider.delete_instance(instance.id)
            if outcome.name == outcome.id:
                outcome.name = instance.name
            if outcome.success:
                result.deleted.append(outcome)
            else:
                logger.error(f"  Failed to delete {instance.name}: {outcome.error}")
                result.failed.append(outcome)

        logger.info(f"  Deleted: {len(result.deleted)}  Failed: {len(result.failed)}")

    async def cleanup_component(self, name: ProviderName, options: CleanupOptions) -> CleanupResult:
        component = name.value
        provider = self.providers[name]
        result = CleanupResult(component=component, dry_run=options.dry_run)

        logger.info(f"Scanning {component} instances...")
        instances = await provider.list_instances(options.filter)
        if options.ids:
            instances = [instance for instance in instances if instance.id in options.ids]
        result.listed = instances

        if not instances:
            logger.info(f"  No {component} instances found")
            return result

        if options.filter.is_empty and not options.ids:
            logger.warning(f"  Showing ALL {component} resources (no filter active)")
        display_instances(component, instances, options.verbose)

        if options.list_only:
            logger.info("  List-only mode (default). Use --interactive to delete resources.")
            return result

        to_delete = instances
        if options.dry_run:
            logger.info(f"  [DRY RUN] Would delete {len(to_delete)} instance(s)")
            result.deleted = [DeleteOutcome(i.id, i.name, success=True) for i in to_delete]
            return result

        if self.select is None:
            raise ValueError("interactive cleanup requires a selector")
        to_delete = self.select(component, instances)
        if not to_delete:
            logger.info("  Nothing selected, no resources deleted")
            return result

        await self._delete_all(provider, to_delete, result)
        return result

    async def cleanup(self, components: Iterable[ProviderName], options: CleanupOptions) -> List[CleanupResult]:
        """
        Clean up each component in turn, dependents before the vault.

        A component whose listing fails is recorded as failed and the run
        moves on to the next component.
        """
        rank = {name: index for index, name in enumerate(PRIORITY)}
        ordered = sorted(set(components), key=lambda n: rank.get(n, len(rank)), reverse=True)

        logger.info(describe_scope(options))
        if not options.list_only and options.filter.is_empty and not options.ids:
            logger.warning("WARNING: No project filter active - every resource is eligible for deletion")

        results = []
        for name in ordered:
            try:
                results.append(await self.cleanup_component(name, options))
            except Exception as e:
                logger.error(f"Failed to clean up {name.value}: {e}")
                results.append(CleanupResult(component=name.value, failed=[
                    DeleteOutcome(id="unknown", name=name.value, success=False, error=str(e)),
                ], dry_run=options.dry_run))

        total_deleted = sum(len(r.deleted) for r in results)
        total_failed = sum(len(r.failed) for r in results)
        verb = "Would delete" if options.dry_run else "Total deleted"
        logger.info(f"Cleanup complete. {verb}: {total_deleted}  Total failed: {total_failed}")
        return results
