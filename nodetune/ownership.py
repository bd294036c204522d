"""Ownership/priority naming.

Every artifact a module leaves on the host is named after the owning
HostConfig and a priority, so several HostConfigs can each own a slice of
the same module type without overwriting one another.  The true resource
is the (module type, owner, priority) triple, not the bare module type.

Owner slugs always contain ``_`` and entry names are sanitized without it,
so an owned name never equals a legacy ``nodetune-<entry>`` name.
"""

import re
from typing import NamedTuple

ARTIFACT_TAG = "nodetune"
OWNER_SEPARATOR = "_"

_UNSAFE = re.compile(r"[^a-z0-9-]")
# nodetune-<namespace label>_...
_OWNED = re.compile(rf"^{ARTIFACT_TAG}-[a-z0-9]([-a-z0-9]*[a-z0-9])?{OWNER_SEPARATOR}")


def sanitize(name: str) -> str:
    """Lowercase, spaces and underscores to dashes, drop anything else unsafe."""
    return _UNSAFE.sub("", name.lower().replace(" ", "-").replace("_", "-"))


def owner_slug(namespace: str, name: str) -> str:
    """``<namespace>_<name>``, dots in the name written as underscores.

    Namespaces are DNS labels (no ``.`` or ``_``) and names are DNS
    subdomains (no ``_``), so the first underscore splits the slug back into
    exactly one namespace/name pair.
    """
    return f"{namespace}{OWNER_SEPARATOR}{name.replace('.', OWNER_SEPARATOR)}"


class ArtifactId(NamedTuple):
    module: str
    owner: str
    priority: int

    def prefix(self) -> str:
        """Priority-ordered stem for drop-in directories: ``50-nodetune-<owner>``."""
        return f"{self.priority:02d}-{ARTIFACT_TAG}-{self.owner}"

    def stem(self) -> str:
        return f"{ARTIFACT_TAG}-{self.owner}"

    def scoped(self, name: str) -> str:
        """Owner-scoped name for named artifacts: ``nodetune-<owner>-<name>``."""
        return f"{self.stem()}-{name}"

    def at_priority(self, priority: int | None) -> "ArtifactId":
        """Same owner at a per-item priority; None keeps the section's."""
        if priority is None:
            return self
        return self._replace(priority=priority)


def legacy_name(name: str = "") -> str:
    """Pre-ownership single-owner name: ``nodetune`` or ``nodetune-<name>``."""
    return f"{ARTIFACT_TAG}-{name}" if name else ARTIFACT_TAG


def is_owned_name(name: str) -> bool:
    """True for a name under some owner's ``nodetune-<owner>`` stem."""
    return _OWNED.match(name) is not None
