"""File-backed object store and node registry.

Stands in for the shared control plane: every node agent and the CLI point
at the same directory.  Layout::

    <root>/objects/<namespace>/<name>.json
    <root>/nodes/<name>.json

Writes go through a temp file and a rename, under an exclusive flock on
``<root>/.lock``.  Each object carries a resourceVersion; ``update`` and
``update_status`` fail with ResourceVersionConflict when the caller's copy is
stale, which is what the status aggregator retries on.
"""

import fcntl
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .console import _info
from .errors import (
    NodetuneError,
    ObjectNotFoundError,
    ResourceVersionConflict,
    StateReadError,
    StateWriteError,
)
from .models import HostConfig, Node, split_key
from .selectors import HOSTNAME_LABEL, matches


def _dump(path: Path, doc) -> None:
    tmp = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w") as fh:
            json.dump(doc.model_dump(mode="json", by_alias=True), fh, indent=2)
            fh.write("\n")
        tmp.rename(path)
    except OSError as exc:
        raise StateWriteError(f"cannot write {path}: {exc}") from exc


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        raise StateWriteError(f"cannot remove {path}: {exc}") from exc


def _load(path: Path, model):
    try:
        with open(path) as fh:
            return model.model_validate(json.load(fh))
    except FileNotFoundError:
        raise
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise StateReadError(f"cannot load {path}: {exc}") from exc


class ObjectStore:
    """HostConfig objects with generations, finalizers and CAS writes."""

    def __init__(self, root):
        self.root = Path(root)

    def _open_lock(self):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            lock = open(self.root / ".lock", "a")
        except OSError as exc:
            raise StateWriteError(f"cannot lock store {self.root}: {exc}") from exc
        return lock

    @contextmanager
    def _locked(self):
        with self._open_lock() as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

    def _path(self, key: str) -> Path:
        namespace, name = split_key(key)
        return self.root / "objects" / namespace / f"{name}.json"

    def _read(self, key: str) -> HostConfig:
        try:
            return _load(self._path(key), HostConfig)
        except FileNotFoundError:
            raise ObjectNotFoundError(f"hostconfig {key} not found") from None

    def _list(self) -> list:
        base = self.root / "objects"
        if not base.is_dir():
            return []
        return [_load(p, HostConfig) for p in sorted(base.glob("*/*.json"))]

    # ── reads ─────────────────────────────────────────────────────────────

    def get(self, key: str) -> HostConfig:
        return self._read(key)

    def list_objects(self) -> list:
        return self._list()

    # ── writes ────────────────────────────────────────────────────────────

    def create(self, obj: HostConfig, admit=None) -> HostConfig:
        """Store a new object at generation 1.

        *admit(obj, existing)* runs under the store lock before the write
        and may raise to reject it.
        """
        with self._locked():
            path = self._path(obj.key)
            if path.exists():
                raise NodetuneError(f"hostconfig {obj.key} already exists")
            if admit is not None:
                admit(obj, self._list())
            stored = obj.model_copy(deep=True)
            stored.metadata.generation = 1
            stored.metadata.resource_version = 1
            stored.metadata.finalizers = []
            stored.metadata.deletion_timestamp = None
            _dump(path, stored)
        return stored

    def update(self, obj: HostConfig, admit=None) -> HostConfig:
        """Replace spec and labels; bumps generation only if the spec changed."""
        with self._locked():
            current = self._read(obj.key)
            if obj.metadata.resource_version != current.metadata.resource_version:
                raise ResourceVersionConflict(
                    f"hostconfig {obj.key} was modified concurrently")
            if admit is not None:
                others = [o for o in self._list() if o.key != obj.key]
                admit(obj, others)
            stored = current.model_copy(deep=True)
            if obj.spec != current.spec:
                stored.metadata.generation += 1
            stored.spec = obj.spec.model_copy(deep=True)
            stored.metadata.labels = dict(obj.metadata.labels)
            stored.metadata.resource_version += 1
            _dump(self._path(obj.key), stored)
        return stored

    def apply(self, obj: HostConfig, admit=None) -> HostConfig:
        """Create, or update over whatever version is stored now."""
        try:
            current = self.get(obj.key)
        except ObjectNotFoundError:
            return self.create(obj, admit=admit)
        obj = obj.model_copy(deep=True)
        obj.metadata.resource_version = current.metadata.resource_version
        return self.update(obj, admit=admit)

    def update_status(self, obj: HostConfig) -> HostConfig:
        """Replace only the status sub-document, under CAS."""
        with self._locked():
            current = self._read(obj.key)
            if obj.metadata.resource_version != current.metadata.resource_version:
                raise ResourceVersionConflict(
                    f"hostconfig {obj.key} status was modified concurrently")
            current.status = obj.status.model_copy(deep=True)
            current.metadata.resource_version += 1
            _dump(self._path(obj.key), current)
        return current

    def delete(self, key: str) -> bool:
        """Delete, or mark for deletion while finalizers remain.

        Returns True when the object is gone.
        """
        with self._locked():
            current = self._read(key)
            path = self._path(key)
            if not current.metadata.finalizers:
                _unlink(path)
                return True
            if current.metadata.deletion_timestamp is None:
                current.metadata.deletion_timestamp = datetime.now(timezone.utc)
                current.metadata.resource_version += 1
                _dump(path, current)
            return False

    def add_finalizer(self, key: str, finalizer: str) -> HostConfig:
        with self._locked():
            current = self._read(key)
            if finalizer not in current.metadata.finalizers:
                current.metadata.finalizers.append(finalizer)
                current.metadata.resource_version += 1
                _dump(self._path(key), current)
        return current

    def remove_finalizer(self, key: str, finalizer: str) -> None:
        """Drop a finalizer; the last one out of a deleting object removes it."""
        with self._locked():
            try:
                current = self._read(key)
            except ObjectNotFoundError:
                return
            if finalizer not in current.metadata.finalizers:
                return
            current.metadata.finalizers.remove(finalizer)
            path = self._path(key)
            if current.is_deleting and not current.metadata.finalizers:
                _unlink(path)
                _info(f"Deleted hostconfig {key}")
                return
            current.metadata.resource_version += 1
            _dump(path, current)


class NodeRegistry:
    """Node labels and readiness, shared by every agent."""

    def __init__(self, root):
        self.root = Path(root) / "nodes"

    def register(self, node: Node) -> Node:
        node = node.model_copy(deep=True)
        node.labels[HOSTNAME_LABEL] = node.name
        _dump(self.root / f"{node.name}.json", node)
        return node

    def get(self, name: str) -> Node | None:
        try:
            return _load(self.root / f"{name}.json", Node)
        except FileNotFoundError:
            return None

    def list_nodes(self) -> list:
        if not self.root.is_dir():
            return []
        return [_load(p, Node) for p in sorted(self.root.glob("*.json"))]

    def list_matching(self, selector: list) -> list:
        return [n for n in self.list_nodes() if matches(selector, n.labels)]
