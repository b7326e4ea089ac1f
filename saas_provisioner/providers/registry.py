"""Provider lookup by name."""
from typing import Dict, Iterable, Optional, Type

from ..domains.models import ProviderName
from .backend_host import BackendHostProvider
from .base import Provider, ProviderContext
from .database import DatabaseProvider
from .email import EmailProvider
from .frontend_host import FrontendHostProvider
from .secrets_vault import SecretsVaultProvider
from .source_control import SourceControlProvider

PROVIDER_CLASSES: Dict[ProviderName, Type[Provider]] = {
    ProviderName.SECRETS_VAULT: SecretsVaultProvider,
    ProviderName.DATABASE: DatabaseProvider,
    ProviderName.BACKEND_HOST: BackendHostProvider,
    ProviderName.FRONTEND_HOST: FrontendHostProvider,
    ProviderName.EMAIL: EmailProvider,
    ProviderName.SOURCE_CONTROL: SourceControlProvider,
}


def build_providers(context: ProviderContext,
                    names: Optional[Iterable[ProviderName]] = None) -> Dict[ProviderName, Provider]:
    """Instantiate the providers for `names` (all of them by default)."""
    selected = list(names) if names is not None else list(PROVIDER_CLASSES)
    return {name: PROVIDER_CLASSES[name](context) for name in selected}
