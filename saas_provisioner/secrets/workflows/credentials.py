"""Workflow for provider credential lookup with caching and fallback."""
import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ...domains.errors import ConfigError, MissingCredentialsError
from ...domains.models import ProviderName
from ..domains.gcp_client import GCPSecretStore
from ..domains.onepassword_client import OnePasswordSecretStore
from ..domains.preferences import get_master_vault
from ..domains.store import SecretStore

logger = logging.getLogger(__name__)

# Module-level cache: {master_vault:item/section/field -> value}
# Per-process cache, NOT per-CLI invocation
_credential_cache: Dict[str, str] = {}


@dataclass(frozen=True)
class CredentialSpec:
    """Where one provider credential lives in the master vault and the environment."""
    key: str
    item: str
    section: str
    field: str
    env_vars: Tuple[str, ...]
    legacy_fields: Tuple[str, ...] = ()
    required: bool = True
    secret: bool = True
    prompt: str = ""


PROVIDER_CREDENTIALS: Dict[ProviderName, List[CredentialSpec]] = {
    ProviderName.DATABASE: [
        CredentialSpec("api_key", "Neon", "Credentials", "api_key", ("NEON_API_KEY",),
                       ("API_KEY", "credential"), prompt="Neon API key"),
        CredentialSpec("org_id", "Neon", "Credentials", "org_id", ("NEON_ORG_ID",),
                       ("ORG_ID",), required=False, secret=False, prompt="Neon organization ID"),
        CredentialSpec("region", "Neon", "Configuration", "region", ("NEON_REGION",),
                       ("REGION",), required=False, secret=False, prompt="Neon region"),
    ],
    ProviderName.BACKEND_HOST: [
        CredentialSpec("url", "CapRover", "Server", "url", ("CAPROVER_URL",),
                       ("URL",), secret=False, prompt="CapRover URL (https://captain.example.com)"),
        CredentialSpec("password", "CapRover", "Server", "password", ("CAPROVER_PASSWORD",),
                       ("PASSWORD", "credential"), prompt="CapRover password"),
    ],
    ProviderName.FRONTEND_HOST: [
        CredentialSpec("token", "Netlify", "Credentials", "token", ("NETLIFY_TOKEN",),
                       ("NETLIFY_TOKEN", "credential"), prompt="Netlify personal access token"),
        CredentialSpec("team_slug", "Netlify", "Team", "team_slug", ("NETLIFY_TEAM_SLUG",),
                       required=False, secret=False, prompt="Netlify team slug"),
    ],
    ProviderName.EMAIL: [
        CredentialSpec("api_key", "Resend", "Credentials", "api_key", ("RESEND_API_KEY", "RESEND_MASTER_KEY"),
                       ("API_KEY", "MASTER_KEY", "credential"), prompt="Resend API key (full access)"),
    ],
}


def clear_cache() -> None:
    _credential_cache.clear()


def build_secret_store(config: Optional[Dict[str, Any]] = None) -> SecretStore:
    """Select the secret store backend named by `secret_store.backend`."""
    config = config or {}
    backend = (config.get("secret_store") or {}).get("backend", "onepassword")
    if backend == "onepassword":
        return OnePasswordSecretStore()
    if backend == "gcp":
        return GCPSecretStore(project_id=(config.get("gcp") or {}).get("project_id"))
    raise ConfigError(f"Unsupported secret_store.backend: {backend}")


class CredentialResolver:
    """
    Resolves provider credentials.

    Precedence: explicit override, then the master vault (structured
    item/section/field, then legacy upper-case flat fields), then environment
    variables. Environment values that are op:// references are resolved
    through the secret store.
    """

    def __init__(self, store: SecretStore, master_vault: Optional[str] = None,
                 overrides: Optional[Mapping[str, str]] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 use_master_vault: bool = True):
        self.store = store
        self.master_vault = master_vault if master_vault is not None else (
            get_master_vault() if use_master_vault else None
        )
        self.overrides = dict(overrides or {})
        self.environ = os.environ if environ is None else environ

    def _cache_key(self, spec: CredentialSpec) -> str:
        return f"{self.master_vault or 'env'}:{spec.item}/{spec.section}/{spec.field}"

    async def _from_master_vault(self, spec: CredentialSpec) -> Optional[str]:
        if not self.master_vault:
            return None

        value = await self.store.read_field(self.master_vault, spec.item, spec.section, spec.field)
        if value:
            return value

        # Legacy flat format: upper-case item, field outside any section
        for legacy in (spec.field.upper(),) + spec.legacy_fields:
            value = await self.store.read_field(self.master_vault, spec.item.upper(), "", legacy)
            if value:
                logger.debug(f"Using legacy field {spec.item.upper()}/{legacy}")
                return value
        return None

    async def _from_environment(self, spec: CredentialSpec) -> Optional[str]:
        for env_var in spec.env_vars:
            value = self.environ.get(env_var)
            if not value:
                continue
            if value.startswith("op://"):
                resolved = await self.store.read_reference(value)
                if resolved:
                    return resolved
                logger.warning(f"{env_var} references {value} but it could not be read")
                continue
            return value
        return None

    async def get(self, spec: CredentialSpec) -> Optional[str]:
        """
        Look up one credential.

        Returns:
            The value, or None when no source has it
        """
        for env_var in spec.env_vars:
            if env_var in self.overrides:
                return self.overrides[env_var]

        cache_key = self._cache_key(spec)
        if cache_key in _credential_cache:
            return _credential_cache[cache_key]

        value = await self._from_master_vault(spec)
        source = "master vault"
        if not value:
            value = await self._from_environment(spec)
            source = "environment"

        if value:
            logger.debug(f"Resolved {spec.item}/{spec.section}/{spec.field} from {source}")
            _credential_cache[cache_key] = value
        return value

    async def resolve(self, provider: ProviderName) -> Dict[str, Optional[str]]:
        return {spec.key: await self.get(spec) for spec in PROVIDER_CREDENTIALS.get(provider, [])}

    async def require(self, provider: ProviderName) -> Dict[str, Optional[str]]:
        """
        Resolve a provider's credentials, failing when a required one is absent.

        Raises:
            MissingCredentialsError: Listing the env vars that would satisfy
                each missing credential
        """
        values = await self.resolve(provider)
        missing = [
            spec.env_vars[0]
            for spec in PROVIDER_CREDENTIALS.get(provider, [])
            if spec.required and not values.get(spec.key)
        ]
        if missing:
            raise MissingCredentialsError(provider.value, missing)
        return values
