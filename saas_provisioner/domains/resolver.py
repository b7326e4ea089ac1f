"""Dependency resolution between providers."""
import heapq
import logging
from typing import Dict, Iterable, List, Optional, Set

from .errors import CyclicDependencyError
from .models import ProviderName

logger = logging.getLogger(__name__)

# Fixed execution priority, also the topological tie-break.
PRIORITY: List[ProviderName] = [
    ProviderName.SECRETS_VAULT,
    ProviderName.DATABASE,
    ProviderName.BACKEND_HOST,
    ProviderName.FRONTEND_HOST,
    ProviderName.EMAIL,
    ProviderName.SOURCE_CONTROL,
]

# provider -> providers it requires
REQUIRES: Dict[ProviderName, List[ProviderName]] = {
    ProviderName.SECRETS_VAULT: [],
    ProviderName.DATABASE: [ProviderName.SECRETS_VAULT],
    ProviderName.BACKEND_HOST: [ProviderName.SECRETS_VAULT],
    ProviderName.FRONTEND_HOST: [ProviderName.SECRETS_VAULT],
    ProviderName.EMAIL: [ProviderName.SECRETS_VAULT],
    ProviderName.SOURCE_CONTROL: [ProviderName.SECRETS_VAULT],
}


def resolve(requested: Optional[Iterable[ProviderName]] = None,
            requires: Optional[Dict[ProviderName, List[ProviderName]]] = None) -> List[ProviderName]:
    """
    Expand a provider selection with its prerequisites and order it.

    Args:
        requested: Providers asked for; empty or None selects all of them
        requires: Prerequisite graph, defaults to REQUIRES

    Returns:
        Providers in execution order. Prerequisites always come before their
        dependents; ties are broken by PRIORITY, so the output is stable.

    Raises:
        CyclicDependencyError: If the prerequisite graph contains a cycle
    """
    graph = REQUIRES if requires is None else requires
    selected = list(requested or [])
    if not selected:
        selected = list(PRIORITY)

    # Transitive closure over prerequisites
    closure: Set[ProviderName] = set()
    queue = list(selected)
    while queue:
        name = queue.pop(0)
        if name in closure:
            continue
        closure.add(name)
        for dep in graph.get(name, []):
            if dep not in closure:
                logger.debug(f"Adding {dep} (required by {name})")
                queue.append(dep)

    rank = {name: index for index, name in enumerate(PRIORITY)}
    in_degree = {name: 0 for name in closure}
    dependents: Dict[ProviderName, List[ProviderName]] = {name: [] for name in closure}
    for name in closure:
        for dep in graph.get(name, []):
            in_degree[name] += 1
            dependents[dep].append(name)

    ready = [(rank.get(name, len(rank)), name.value, name) for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: List[ProviderName] = []
    while ready:
        _, _, name = heapq.heappop(ready)
        ordered.append(name)
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (rank.get(dependent, len(rank)), dependent.value, dependent))

    if len(ordered) != len(closure):
        stuck = sorted(name.value for name in closure if name not in ordered)
        raise CyclicDependencyError(f"Cyclic provider dependencies: {', '.join(stuck)}")

    return ordered
