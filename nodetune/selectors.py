"""Label selectors: matching nodes and the canonical string form."""

from .models import SelectorRequirement

HOSTNAME_LABEL = "nodetune.io/hostname"


def requirement_matches(req: SelectorRequirement, labels: dict) -> bool:
    if req.operator == "In":
        return req.key in labels and labels[req.key] in req.values
    if req.operator == "NotIn":
        return req.key not in labels or labels[req.key] not in req.values
    if req.operator == "Exists":
        return req.key in labels
    if req.operator == "DoesNotExist":
        return req.key not in labels
    raise ValueError(f"unknown selector operator {req.operator!r}")


def matches(selector: list, labels: dict) -> bool:
    """True when every requirement holds; an empty selector matches all."""
    return all(requirement_matches(req, labels) for req in selector)


def hostname_requirement(node_name: str) -> SelectorRequirement:
    return SelectorRequirement(key=HOSTNAME_LABEL, operator="In",
                               values=[node_name])


def _render(req: SelectorRequirement) -> str:
    values = ",".join(sorted(set(req.values)))
    if req.operator == "In":
        return f"{req.key} in ({values})"
    if req.operator == "NotIn":
        return f"{req.key} notin ({values})"
    if req.operator == "Exists":
        return req.key
    return f"!{req.key}"


def canonical(selector: list) -> str:
    """Order-independent string form used to compare selectors for equality."""
    rendered = sorted((req.key, _render(req)) for req in selector)
    return ",".join(text for _, text in rendered)
