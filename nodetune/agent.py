"""Node agent: decides when each HostConfig is handed to the driver.

A HostConfig is reconciled when it first appears, when its generation or
deletion state changes, when its requeue delay runs out, and, for every
object at once, when the local node's labels change.
"""

import threading
import time

from .console import _error, _info
from .driver import ReconcileResult
from .errors import NodetuneError


class Agent:

    def __init__(self, driver, store, registry, config, clock=time.monotonic):
        self.driver = driver
        self.store = store
        self.registry = registry
        self.config = config
        self.clock = clock
        self._seen = {}    # key → (generation, deleting)
        self._due = {}     # key → clock time of the next resync
        self._labels = None
        self._stop = threading.Event()

    def _node_labels(self) -> dict:
        node = self.registry.get(self.config.node_name)
        return dict(node.labels) if node else {}

    def due_keys(self, now: float) -> list:
        labels = self._node_labels()
        relabelled = self._labels is not None and labels != self._labels
        if relabelled:
            _info(f"Labels of node {self.config.node_name} changed "
                  "— re-evaluating every HostConfig")
        self._labels = labels

        keys = []
        current = set()
        for obj in self.store.list_objects():
            key = obj.key
            current.add(key)
            marker = (obj.metadata.generation, obj.is_deleting)
            due = self._due.get(key)
            if (relabelled or self._seen.get(key) != marker
                    or (due is not None and due <= now)):
                keys.append(key)
            self._seen[key] = marker

        for gone in set(self._seen) - current:
            self._seen.pop(gone, None)
            self._due.pop(gone, None)
        return keys

    def reconcile(self, key: str) -> ReconcileResult:
        try:
            result = self.driver.reconcile(key)
        except (NodetuneError, OSError) as exc:
            _error(f"{key}: {exc}")
            result = ReconcileResult(self.config.resync_interval, str(exc))
        if result.requeue_after is None:
            self._due.pop(key, None)
        else:
            self._due[key] = self.clock() + result.requeue_after
        return result

    def run_once(self) -> dict:
        """One poll: reconcile whatever is due.  Returns key → result."""
        return {key: self.reconcile(key) for key in self.due_keys(self.clock())}

    def run(self) -> None:
        _info(f"Agent started on node {self.config.node_name} "
              f"(poll {self.config.poll_interval:g}s, "
              f"resync {self.config.resync_interval:g}s)")
        while not self._stop.is_set():
            try:
                self.run_once()
            except NodetuneError as exc:
                _error(f"poll failed: {exc}")
            self._stop.wait(self.config.poll_interval)

    def stop(self) -> None:
        self._stop.set()
