"""Terminal prompts for interactive cleanup and --init."""
import getpass
from typing import Callable, List, Optional, Sequence, Set

from saas_provisioner.domains.models import Instance

BULK_WARNING_THRESHOLD = 5


def parse_selection(answer: str, count: int) -> Optional[Set[int]]:
    """
    Parse a selection like "1,3-5" or "all" into zero-based indexes.

    Returns:
        The selected indexes, an empty set for a blank answer, or None when
        the answer cannot be parsed
    """
    answer = answer.strip().lower()
    if not answer:
        return set()
    if answer in ("all", "a", "*"):
        return set(range(count))

    selected: Set[int] = set()
    for part in answer.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                start, end = (int(p) for p in part.split("-", 1))
            else:
                start = end = int(part)
        except ValueError:
            return None
        if start < 1 or end > count or start > end:
            return None
        selected.update(range(start - 1, end))
    return selected


def confirm(question: str, read: Callable[[str], str] = input) -> bool:
    """y/N question; anything but y or yes is a no."""
    return read(f"{question} (y/N): ").strip().lower() in ("y", "yes")


def select_instances(component: str, instances: Sequence[Instance],
                     read: Callable[[str], str] = input) -> List[Instance]:
    """Ask which instances to delete, then confirm. Returns [] when cancelled."""
    print(f"\nSelect {component} instances to delete:")
    for index, instance in enumerate(instances, start=1):
        print(f"  [{index}] {instance.name} ({instance.environment}, {instance.id})")

    while True:
        answer = read("Numbers (e.g. 1,3-5), 'all', or empty to cancel: ")
        selected = parse_selection(answer, len(instances))
        if selected is not None:
            break
        print(f"Invalid selection '{answer}'. Use numbers between 1 and {len(instances)}.")

    if not selected:
        print("Selection cancelled.")
        return []

    chosen = [instances[i] for i in sorted(selected)]
    print(f"\nSelected {len(chosen)} {component} instance(s):")
    for instance in chosen:
        print(f"  - {instance.name}")
    if len(chosen) > BULK_WARNING_THRESHOLD:
        print(f"WARNING: You are about to delete {len(chosen)} resources.")

    if not confirm(f"Delete {len(chosen)} instance(s)? This cannot be undone.", read):
        print("Deletion cancelled.")
        return []
    return chosen


def ask_value(label: str, secret: bool = False, default: Optional[str] = None) -> str:
    """Prompt for a single value; secrets are read without echo."""
    suffix = f" [{default}]" if default else ""
    prompt = f"{label}{suffix}: "
    value = getpass.getpass(prompt) if secret else input(prompt)
    return value.strip() or (default or "")
