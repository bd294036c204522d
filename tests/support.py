"""Shared fixtures: silenced console, a recording host, temp workspaces."""

import os
import subprocess
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from nodetune.config import AgentConfig
from nodetune.errors import CommandError
from nodetune.host import DebianPlatform, HostSystem
from nodetune.models import HostConfig

_DEVNULL = open(os.devnull, "w")


class NodetuneTestCase(unittest.TestCase):
    """Base class that suppresses console output and provides a temp dir."""

    def setUp(self):
        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()
        self._suppress.__exit__(None, None, None)


class RecordingHost(HostSystem):
    """HostSystem over a temp root that records commands instead of running them.

    It simulates just enough of the host for modules to converge: services
    started by systemctl become active, modprobe loads modules, ``sysctl -p``
    sets live values, apt-get installs packages and update-ca-certificates
    rebuilds the bundle.
    """

    def __init__(self, root, platform=None, dry_run=False):
        super().__init__(root=str(root), proc_root=str(Path(root) / "proc"),
                         dry_run=dry_run, sys_root=str(Path(root) / "sys"))
        self._platform = platform or DebianPlatform()
        self.commands = []
        self.loaded = set()
        self.active = set()
        self.installed = {}
        self.sysctl = {}
        # argv prefix tuple → (returncode, output)
        self.failures = {}

    def fail(self, *prefix, returncode=1, output=""):
        self.failures[prefix] = (returncode, output)

    def _failure(self, cmd):
        for prefix, result in self.failures.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                return result
        return None

    def run_cmd(self, cmd, chroot=True):
        cmd = [str(c) for c in cmd]
        self.commands.append(cmd)
        if self.dry_run:
            return None
        self.mutations += 1
        failure = self._failure(cmd)
        if failure:
            raise CommandError(cmd, failure[0], failure[1])
        self._simulate(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _simulate(self, cmd):
        if cmd[0] == "modprobe":
            self.loaded.add(cmd[1])
        elif cmd[:2] in (["systemctl", "start"], ["systemctl", "restart"]):
            self.active.add(cmd[2])
        elif cmd[:2] == ["systemctl", "stop"]:
            self.active.discard(cmd[2])
        elif cmd[:2] == ["sysctl", "-p"]:
            for line in (self.read_text(cmd[2]) or "").splitlines():
                name, _, value = line.partition("=")
                self.sysctl[name.strip()] = value.strip()
        elif cmd[:2] == ["apt-get", "install"]:
            for spec in cmd[4:]:
                name, _, version = spec.partition("=")
                self.installed[name] = version or "1.0-1"
        elif cmd[0] in ("update-ca-certificates", "update-ca-trust"):
            ca_dir = self.path(self._platform.ca_dir)
            certs = sorted(p for p in ca_dir.rglob("*") if p.is_file())
            bundle = self.path(self._platform.ca_bundle)
            bundle.parent.mkdir(parents=True, exist_ok=True)
            bundle.write_text("".join(p.read_text() for p in certs))

    def probe(self, cmd, chroot=True):
        cmd = [str(c) for c in cmd]
        out, rc = "", 1
        if cmd[:3] == ["systemctl", "is-active", "--quiet"]:
            rc = 0 if cmd[3] in self.active else 3
        elif cmd[0] == "dpkg-query" and cmd[-1] in self.installed:
            out, rc = f"install ok installed {self.installed[cmd[-1]]}", 0
        return subprocess.CompletedProcess(cmd, rc, out, "")

    def kernel_module_loaded(self, name):
        return name in self.loaded

    def read_proc(self, rel):
        if rel.startswith("sys/"):
            value = self.sysctl.get(rel[4:].replace("/", "."))
            return None if value is None else value + "\n"
        return None

    def local(self):
        """Sibling temp root standing in for the agent's own filesystem."""
        local = RecordingHost(f"{self.root}-local", platform=self._platform,
                              dry_run=self.dry_run)
        for attr in ("commands", "loaded", "active", "installed", "sysctl",
                     "failures"):
            setattr(local, attr, getattr(self, attr))
        return local

    def commands_starting(self, *prefix):
        return [c for c in self.commands if tuple(c[:len(prefix)]) == prefix]


def make_config(tmp, **overrides) -> AgentConfig:
    values = {
        "node_name": "node-1",
        "store_path": str(Path(tmp) / "store"),
        "host_root": str(Path(tmp) / "host"),
        "hostfs_enabled": True,
        "packages_enabled": True,
        "ignore_node_ready": False,
        "resync_interval": 300,
        "not_ready_backoff": 60,
    }
    values.update(overrides)
    return AgentConfig(**values)


def hostconfig(name="web", namespace="default", selector=None, **spec) -> HostConfig:
    """Build a HostConfig from wire-format (camelCase) spec sections."""
    doc = {
        "metadata": {"name": name, "namespace": namespace},
        "spec": dict(spec),
    }
    if selector is not None:
        doc["spec"]["nodeSelector"] = [
            {"key": k, "operator": "In", "values": [v]}
            for k, v in selector.items()
        ]
    return HostConfig.model_validate(doc)
