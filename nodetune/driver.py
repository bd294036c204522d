"""Reconciliation driver: one HostConfig, the local node, one outcome."""

from typing import NamedTuple

from .console import _I, _banner, _debug, _error, _info, _section, _warn
from .errors import ModuleError, ObjectNotFoundError
from .models import NodeStatus
from .modules import build_modules
from .selectors import hostname_requirement, matches
from .status import StatusReporter

FINALIZER_PREFIX = "nodetune.io/finalizer-"

_ICONS = {
    "file-block": _I.FILE,
    "hosts": _I.GLOBE,
    "packages": _I.PACKAGE,
    "kernel-modules": _I.LINUX,
    "kernel-parameters": _I.WRENCH,
    "systemd-units": _I.COGS,
    "certificates": _I.SHIELD,
    "systemd-overrides": _I.COGS,
    "crontabs": _I.CLOCK,
    "bootloader": _I.ROCKET,
}


class ReconcileResult(NamedTuple):
    # seconds until the next pass; None means wait for a trigger
    requeue_after: float | None
    error: str = ""


class Driver:

    def __init__(self, store, registry, host, config, reporter=None,
                 module_factory=build_modules):
        self.store = store
        self.registry = registry
        self.host = host
        self.config = config
        self.node_name = config.node_name
        self.reporter = reporter or StatusReporter(
            store, registry, config.node_name, config.status_retries)
        self.module_factory = module_factory

    @property
    def finalizer(self) -> str:
        return FINALIZER_PREFIX + self.node_name

    def is_target(self, obj, node) -> bool:
        """Empty selector: every node.  Otherwise selector AND hostname."""
        if not obj.spec.node_selector:
            return True
        if node is None:
            return False
        selector = list(obj.spec.node_selector)
        selector.append(hostname_requirement(self.node_name))
        return matches(selector, node.labels)

    def reconcile(self, key: str) -> ReconcileResult:
        try:
            obj = self.store.get(key)
        except ObjectNotFoundError:
            _debug(f"{key} is gone")
            return ReconcileResult(None)

        if obj.is_deleting:
            # host state is left as applied; only release our finalizer
            self.store.remove_finalizer(key, self.finalizer)
            _info(f"Released {key} for deletion")
            return ReconcileResult(None)

        node = self.registry.get(self.node_name)
        if not self.is_target(obj, node):
            _debug(f"{key} does not target node {self.node_name}")
            return ReconcileResult(None)

        generation = obj.metadata.generation
        if not self.config.ignore_node_ready and (node is None or not node.ready):
            msg = f"node {self.node_name} is not ready"
            _warn(f"{key}: {msg}")
            self.reporter.set_status(key, NodeStatus.ERROR, msg, generation)
            return ReconcileResult(self.config.not_ready_backoff, msg)

        self.store.add_finalizer(key, self.finalizer)
        previous = obj.status.nodes.get(self.node_name)
        if previous is None or previous.last_generation != generation:
            self.reporter.set_status(key, NodeStatus.IN_PROGRESS,
                                     generation=generation)

        modules = self.module_factory(obj, self.host, self.config)
        _banner(f"Reconciling {key} (generation {generation}) "
                f"on {self.node_name}")
        for step, module in enumerate(modules, 1):
            _section(_ICONS.get(module.name, _I.COGS), module.name,
                     step, len(modules))
            try:
                module.reconcile()
            except ModuleError as exc:
                _error(f"{key}: {exc}")
                self.reporter.set_status(key, NodeStatus.ERROR, str(exc),
                                         generation)
                return ReconcileResult(self.config.resync_interval, str(exc))

        self.reporter.set_status(key, NodeStatus.AVAILABLE,
                                 generation=generation)
        _info(f"{key} applied ({len(modules)} modules)")
        return ReconcileResult(self.config.resync_interval)
