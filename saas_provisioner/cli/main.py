"""CLI entrypoint for saas-provisioner."""
import sys
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

from saas_provisioner.domains.models import ProviderName
from .validators import parse_environments, parse_ids, validate_project_dir, validate_project_name

VERSION = "0.1.0"

logger = logging.getLogger(__name__)

COMPONENTS = [name.value for name in ProviderName]


def _configure_logging(verbose: bool) -> None:
    """Send log output to stderr, INFO by default and DEBUG with --verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )
    # Keep HTTP client chatter out of --verbose output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _flag_dest(action: str, component: str) -> str:
    return f"{action}_{component.replace('-', '_')}"


def _selected_components(args, action: str) -> List[ProviderName]:
    """Components named by --<action>-<component> flags; empty means all."""
    return [ProviderName(c) for c in COMPONENTS if getattr(args, _flag_dest(action, c), False)]


def _wants(args, action: str) -> bool:
    return bool(getattr(args, action, False) or _selected_components(args, action))


def mask_value(value: str, secret: bool = True) -> str:
    """Show enough of a credential to recognise it without revealing it."""
    if not secret:
        return value
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-2:]}"


def _build_context():
    """Load settings and wire the secret store, credentials and retry policy."""
    from saas_provisioner.domains.retry import RetryPolicy
    from saas_provisioner.providers.base import ProviderContext
    from saas_provisioner.secrets.domains.config_loader import load_config
    from saas_provisioner.secrets.workflows.credentials import CredentialResolver, build_secret_store

    config = load_config()
    store = build_secret_store(config)
    return ProviderContext(
        store=store,
        credentials=CredentialResolver(store),
        retry=RetryPolicy.from_config(config),
        settings=config,
    )


def cmd_version(args):
    """Show version information."""
    print(f"saas-provisioner {VERSION}")


async def _check_config() -> bool:
    from saas_provisioner.domains.errors import ConfigError, SecretStoreError
    from saas_provisioner.providers.source_control import GitHubCLI
    from saas_provisioner.secrets.domains.config_loader import _get_config_path, default_config_path, load_config
    from saas_provisioner.secrets.domains.preferences import CONFIG_PATH_KEY, get_master_vault, get_preference
    from saas_provisioner.secrets.workflows.credentials import (
        PROVIDER_CREDENTIALS,
        CredentialResolver,
        build_secret_store,
    )

    ok = True
    config_path = _get_config_path()
    if config_path:
        source = "preference" if get_preference(CONFIG_PATH_KEY) == config_path else "default"
        print(f"Config path: {config_path}")
        print(f"Source: {source}")
    else:
        print(f"Config path: {default_config_path()}")
        print("Source: default (file not found, using defaults)")

    config = load_config()
    store = build_secret_store(config)
    print(f"\nSecret store: {store.name}")
    authenticated = True
    try:
        identity = await store.whoami()
        print(f"  ✓ Authenticated as {identity}")
    except (ConfigError, SecretStoreError) as e:
        authenticated = False
        ok = False
        print(f"  ✗ {e}")

    master_vault = get_master_vault()
    if master_vault:
        print(f"Master vault: {master_vault}")
    else:
        print("Master vault: not set (run 'provision-saas --init')")

    resolver = CredentialResolver(store, use_master_vault=authenticated)
    for provider, specs in PROVIDER_CREDENTIALS.items():
        print(f"\n{provider.value}:")
        for spec in specs:
            value = await resolver.get(spec)
            if value:
                print(f"  ✓ {spec.key}: {mask_value(value, spec.secret)}")
            elif spec.required:
                ok = False
                print(f"  ✗ {spec.key}: missing (set {' or '.join(spec.env_vars)})")
            else:
                print(f"  - {spec.key}: not set (optional)")

    print(f"\n{ProviderName.SOURCE_CONTROL.value}:")
    try:
        await GitHubCLI().auth_status()
        print("  ✓ gh authenticated")
    except ConfigError as e:
        ok = False
        print(f"  ✗ {e}")

    return ok


def cmd_check_config(args):
    """Report store authentication, master vault and provider credential status."""
    ok = asyncio.run(_check_config())
    if not ok:
        print("\nConfiguration incomplete. Run 'provision-saas --init' to store missing credentials.")
        sys.exit(1)
    print("\nConfiguration OK")


async def _init(master_vault: Optional[str]) -> str:
    from saas_provisioner.domains.models import ItemField, ItemSection
    from saas_provisioner.secrets.domains.config_loader import load_config
    from saas_provisioner.secrets.domains.preferences import get_master_vault, set_master_vault
    from saas_provisioner.secrets.workflows.credentials import PROVIDER_CREDENTIALS, build_secret_store, clear_cache
    from .prompts import ask_value

    store = build_secret_store(load_config())
    identity = await store.whoami()
    print(f"Secret store: {store.name} (signed in as {identity})")

    master_vault = master_vault or ask_value("Master vault name", default=get_master_vault() or "saas-provisioner")
    if not await store.vault_exists(master_vault):
        await store.create_vault(master_vault)
        print(f"Created vault {master_vault}")
    set_master_vault(master_vault)

    for provider, specs in PROVIDER_CREDENTIALS.items():
        print(f"\n{provider.value}")
        items: Dict[str, Dict[str, List[ItemField]]] = {}
        for spec in specs:
            existing = await store.read_field(master_vault, spec.item, spec.section, spec.field)
            label = f"  {spec.prompt or spec.key}"
            if existing:
                label += " (already set, Enter keeps it)"
            elif not spec.required:
                label += " (optional)"
            value = ask_value(label, secret=spec.secret)
            if value:
                field = ItemField(spec.field, value, "CONCEALED" if spec.secret else "STRING")
                items.setdefault(spec.item, {}).setdefault(spec.section, []).append(field)

        for item, sections in items.items():
            await store.ensure_item(master_vault, item, [ItemSection(s, f) for s, f in sections.items()])
            print(f"  Saved {item}")

    clear_cache()
    return master_vault


def cmd_init(args):
    """Interactive setup of the master vault and provider credentials."""
    master_vault = asyncio.run(_init(args.master_vault))
    print(f"\nMaster vault set to: {master_vault}")
    print("Verify with: provision-saas --check-config")


def cmd_provision(args, components: List[ProviderName], environments: List[str], project_dir: Path):
    """Provision the selected components, rolling back on failure."""
    from saas_provisioner.domains.errors import ProvisioningError
    from saas_provisioner.domains.models import ProvisionFlags
    from saas_provisioner.workflows.provisioning import Provisioner

    flags = ProvisionFlags(verbose=args.verbose, dry_run=args.dry_run, force=args.force)

    async def run():
        provisioner = Provisioner(_build_context())
        return await provisioner.provision(
            args.project, environments, components or None, flags,
            export_env=args.export_env, project_dir=project_dir,
        )

    try:
        report = asyncio.run(run())
    except ProvisioningError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Rolled back {len(e.compensations) - len(e.failed_rollbacks)} of "
              f"{len(e.compensations)} change(s)", file=sys.stderr)
        for compensation in e.failed_rollbacks:
            print(f"  Manual cleanup needed: {compensation.description}", file=sys.stderr)
        sys.exit(1)

    print(f"\n{'[DRY RUN] ' if args.dry_run else ''}Provisioned {args.project}")
    for env, results in report.results.items():
        print(f"  {env}:")
        for result in results.values():
            state = "created" if result.created else "reused"
            print(f"    {result.provider.value}: {result.resource_name} ({state})")
    for repo in report.repositories:
        print(f"  repository: {repo}")
    for path in report.env_files:
        print(f"  wrote {path}")


def cmd_cleanup(args, components: List[ProviderName], environments: List[str]):
    """List, and on request delete, provisioned resources."""
    from saas_provisioner.domains.models import CleanupFilter
    from saas_provisioner.providers.registry import build_providers
    from saas_provisioner.workflows.cleanup import Cleaner, CleanupOptions
    from .prompts import select_instances

    options = CleanupOptions(
        filter=CleanupFilter(
            project=args.project,
            env=environments[0] if args.project and len(environments) == 1 else None,
            pattern=args.filter,
        ),
        ids=parse_ids(args.ids) if args.ids is not None else (),
        interactive=args.interactive,
        dry_run=args.dry_run,
        verbose=args.verbose,
    )

    async def run():
        providers = build_providers(_build_context(), components or list(ProviderName))
        return await Cleaner(providers, select=select_instances).cleanup(providers.keys(), options)

    results = asyncio.run(run())
    failed = sum(len(result.failed) for result in results)
    if failed:
        print(f"Error: {failed} resource(s) could not be cleaned up", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provision-saas",
        description="saas-provisioner - provision and clean up SaaS infrastructure (dev/prod)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Components:
  secrets-vault, database, backend-host, frontend-host, email, source-control

Examples:
  provision-saas --init --master-vault my-master
  provision-saas --check-config
  provision-saas --provision --project my-saas --env all
  provision-saas --provision-database --env dev --dry-run
  provision-saas --cleanup --project my-saas
  provision-saas --cleanup-database --project my-saas --interactive

Exit codes:
  0 - Success
  1 - Runtime error (provisioning failed and was rolled back, auth, network, etc.)
  2 - Usage error (invalid arguments, conflicting modes, etc.)

Configuration:
  Default location: ~/.config/saas-provisioner/config.yml
  Preferences: ~/.config/saas-provisioner/preferences.json
        """
    )

    modes = parser.add_argument_group("modes")
    modes.add_argument("--provision", action="store_true", help="Provision every component")
    modes.add_argument("--cleanup", action="store_true", help="List (and with --interactive delete) every component")
    modes.add_argument("--check-config", action="store_true", help="Check store authentication and credentials")
    modes.add_argument("--init", action="store_true", help="Store provider credentials in the master vault")
    modes.add_argument("--version", action="store_true", help="Show version information")

    components = parser.add_argument_group("components")
    for component in COMPONENTS:
        components.add_argument(f"--provision-{component}", dest=_flag_dest("provision", component),
                                action="store_true", help=f"Provision {component} (and what it depends on)")
        components.add_argument(f"--cleanup-{component}", dest=_flag_dest("cleanup", component),
                                action="store_true", help=f"Clean up {component}")

    options = parser.add_argument_group("options")
    options.add_argument("--env", default="all", help="Environment: dev, prod or all (default: all)")
    options.add_argument("--project", help="Project name (default for provisioning: current directory name)")
    options.add_argument("--project-dir", default=".", help="Where templates and .env files go (default: .)")
    options.add_argument("--export-env", action="store_true", help="Write .env files from the vault after provisioning")
    options.add_argument("--interactive", action="store_true", help="Select resources to delete during cleanup")
    options.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    options.add_argument("--force", action="store_true", help="Recreate existing resources and rotate CI secrets")
    options.add_argument("--filter", help="Cleanup: only resources whose name contains PATTERN")
    options.add_argument("--ids", help="Cleanup: only these comma-separated resource IDs")
    options.add_argument("--master-vault", help="Master vault name for --init")
    options.add_argument("-v", "--verbose", action="store_true", help="Show detailed output")
    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (provisioning failure, authentication, network, etc.)
        2 - Usage errors (invalid arguments, conflicting modes, etc.)
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    provision = _wants(args, "provision")
    cleanup = _wants(args, "cleanup")
    selected = [args.version, args.init, args.check_config, provision, cleanup]
    if sum(bool(s) for s in selected) > 1:
        print("Error: Choose one of --provision, --cleanup, --check-config, --init, --version", file=sys.stderr)
        sys.exit(2)

    try:
        if args.version:
            cmd_version(args)
        elif args.init:
            cmd_init(args)
        elif args.check_config:
            cmd_check_config(args)
        elif provision or cleanup:
            environments = parse_environments(args.env)
            if provision:
                args.project = args.project or Path(args.project_dir).resolve().name
            if args.project:
                validate_project_name(args.project)
            if provision:
                project_dir = validate_project_dir(args.project_dir)
                cmd_provision(args, _selected_components(args, "provision"), environments, project_dir)
            else:
                cmd_cleanup(args, _selected_components(args, "cleanup"), environments)
        else:
            parser.print_help()
            sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
