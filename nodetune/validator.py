"""Admission-time conflict check.

Two HostConfigs conflict when their node selectors have the same canonical
form and both declare the same module type present.  Selectors that merely
overlap (an empty selector and a specific one) are not compared.
"""

from .errors import ConflictError
from .selectors import canonical


def validate(obj, existing) -> None:
    """Raise ConflictError if *obj* collides with any object in *existing*."""
    selector = canonical(obj.spec.node_selector)
    present = obj.present_modules()
    if not present:
        return
    for other in existing:
        if other.key == obj.key:
            continue
        if canonical(other.spec.node_selector) != selector:
            continue
        shared = sorted(present & other.present_modules())
        if shared:
            raise ConflictError(
                f"{shared[0]} module already defined in {other.key} "
                "for the same node selector")
