"""
`${namespace.name}` placeholder handling for action arguments.

Namespaces: artifacts, run, stage, target. Secrets are deliberately not a
namespace; they only reach commands through the environment.
"""

import re
from typing import Callable, Iterable, List, Tuple

PLACEHOLDER = re.compile(r"\$\{\s*([A-Za-z_]+)\.([A-Za-z0-9_.\-]+)\s*\}")

NAMESPACES = frozenset({"artifacts", "run", "stage", "target"})


def find_references(text: str) -> List[Tuple[str, str]]:
    """Return (namespace, name) pairs referenced in text, in order."""
    return [(m.group(1), m.group(2)) for m in PLACEHOLDER.finditer(text)]


def referenced_names(texts: Iterable[str], namespace: str) -> List[str]:
    """Unique names of one namespace referenced across texts, first-seen order."""
    seen: List[str] = []
    for text in texts:
        for ns, name in find_references(text):
            if ns == namespace and name not in seen:
                seen.append(name)
    return seen


def render(text: str, lookup: Callable[[str, str], str]) -> str:
    """
    Substitute every placeholder using lookup(namespace, name).

    lookup raises to signal an unresolvable reference.
    """
    return PLACEHOLDER.sub(lambda m: str(lookup(m.group(1), m.group(2))), text)
