"""Status/condition aggregation.

Each node agent owns exactly one key of ``status.nodes``.  Whenever it sets
that key it also recomputes the three cluster-wide conditions from every
recorded node outcome and the number of nodes the selector matches now.
"""

from datetime import datetime, timezone

from .console import _debug
from .errors import ResourceVersionConflict
from .models import Condition, NodeOutcome, NodeStatus

CONDITION_TYPES = (NodeStatus.IN_PROGRESS, NodeStatus.AVAILABLE, NodeStatus.ERROR)


def aggregate_conditions(nodes: dict, total: int, previous=(), now=None) -> list:
    """Derive [InProgress, Available, Error] conditions; exactly one is true.

    Stale entries for nodes that no longer match still count as recorded.
    lastTransitionTime moves only when a condition's status flips.
    """
    now = now or datetime.now(timezone.utc)
    outcomes = [n.status for n in nodes.values()]
    errors = outcomes.count(NodeStatus.ERROR)
    available = outcomes.count(NodeStatus.AVAILABLE)
    in_progress = outcomes.count(NodeStatus.IN_PROGRESS)

    if errors:
        active, reason = NodeStatus.ERROR, f"{errors}/{total} nodes in error"
    elif available != total:
        active, reason = (NodeStatus.IN_PROGRESS,
                          f"{in_progress}/{total} nodes in progress")
    else:
        active, reason = NodeStatus.AVAILABLE, "all nodes configured"

    before = {c.type: c for c in previous}
    conditions = []
    for kind in CONDITION_TYPES:
        status = kind == active
        old = before.get(kind)
        if old is not None and old.status == status and old.last_transition_time:
            changed_at = old.last_transition_time
        else:
            changed_at = now
        conditions.append(Condition(
            type=kind,
            status=status,
            reason=reason if status else "",
            last_transition_time=changed_at,
        ))
    return conditions


class StatusReporter:
    """Writes this node's outcome with bounded retry on concurrent writes."""

    def __init__(self, store, registry, node_name: str, retries: int = 5):
        self.store = store
        self.registry = registry
        self.node_name = node_name
        self.retries = retries

    def set_status(self, key: str, outcome: NodeStatus, message: str = "",
                   generation: int | None = None):
        """Record *outcome* for this node on object *key*.

        *generation* is the generation that was reconciled; it defaults to
        the object's current one.
        """
        for attempt in range(1, self.retries + 1):
            obj = self.store.get(key)
            status = obj.status.model_copy(deep=True)
            status.nodes[self.node_name] = NodeOutcome(
                last_generation=(obj.metadata.generation
                                 if generation is None else generation),
                status=outcome,
                error=message if outcome == NodeStatus.ERROR else "",
            )
            total = len(self.registry.list_matching(obj.spec.node_selector))
            status.conditions = aggregate_conditions(
                status.nodes, total, status.conditions)
            obj.status = status
            try:
                return self.store.update_status(obj)
            except ResourceVersionConflict:
                _debug(f"status write for {key} conflicted "
                       f"(attempt {attempt}/{self.retries})")
        raise ResourceVersionConflict(
            f"could not update status of {key} after {self.retries} attempts")
