"""The host a node agent converges.

HostSystem is the privileged execution channel: every file the modules touch
lives under the host root, and every command runs through ``chroot <root>``
unless the root is ``/``.  Mutating calls honour dry-run and are counted;
probes are read-only and always run.
"""

import os
import subprocess
from pathlib import Path

from .console import _dry, _info, _warn
from .errors import CommandError, HostPathError, PreconditionError, StateReadError


# ── Platform profiles ────────────────────────────────────────────────────────

class DebianPlatform:
    family = "debian"
    ca_dir = "/usr/local/share/ca-certificates"
    ca_bundle = "/etc/ssl/certs/ca-certificates.crt"
    ca_update = ["update-ca-certificates"]
    cert_suffix = ".crt"
    cron_service = "cron"
    grub_cfg_paths = ["/boot/grub/grub.cfg"]

    def package_query(self, name: str) -> list:
        return ["dpkg-query", "-W", "-f=${Status} ${Version}", name]

    def parse_installed(self, result) -> str | None:
        """dpkg-query output → installed version, or None."""
        if result.returncode != 0:
            return None
        parts = result.stdout.split()
        # "install ok installed 1.2.3-1"
        if len(parts) < 4 or parts[2] != "installed":
            return None
        return parts[3]

    def package_spec(self, name: str, version: str) -> str:
        return f"{name}={version}" if version else name

    def install_cmd(self, specs: list) -> list:
        return ["apt-get", "install", "-y", "--allow-downgrades"] + specs

    def grub_update_cmd(self, host) -> list:
        return ["update-grub"]


class RedHatPlatform:
    family = "redhat"
    ca_dir = "/etc/pki/ca-trust/source/anchors"
    ca_bundle = "/etc/pki/tls/certs/ca-bundle.crt"
    ca_update = ["update-ca-trust", "extract"]
    cert_suffix = ""
    cron_service = "crond"
    grub_cfg_paths = [
        "/boot/grub2/grub.cfg",
        "/boot/efi/EFI/centos/grub.cfg",
        "/boot/efi/EFI/redhat/grub.cfg",
    ]

    def package_query(self, name: str) -> list:
        return ["rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}", name]

    def parse_installed(self, result) -> str | None:
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def package_spec(self, name: str, version: str) -> str:
        return f"{name}-{version}" if version else name

    def install_cmd(self, specs: list) -> list:
        return ["dnf", "install", "-y"] + specs

    def grub_update_cmd(self, host) -> list:
        for cfg in self.grub_cfg_paths:
            if host.exists(cfg):
                return ["grub2-mkconfig", "-o", cfg]
        raise PreconditionError("could not locate grub.cfg on the host")


_DEBIAN_IDS = {"debian", "ubuntu"}
_REDHAT_IDS = {"rhel", "centos", "fedora", "rocky", "almalinux"}


def parse_os_release(text: str) -> dict:
    info = {}
    for line in text.splitlines():
        line = line.strip()
        if "=" in line and not line.startswith("#"):
            key, _, val = line.partition("=")
            info[key] = val.strip('"')
    return info


def platform_for(os_release: dict):
    ids = {os_release.get("ID", "")} | set(os_release.get("ID_LIKE", "").split())
    if ids & _REDHAT_IDS:
        return RedHatPlatform()
    if not ids & _DEBIAN_IDS:
        _warn(f"Unrecognised host OS '{os_release.get('ID', 'unknown')}' "
              "— assuming a Debian-family host")
    return DebianPlatform()


# ── HostSystem ───────────────────────────────────────────────────────────────

class HostSystem:

    def __init__(self, root: str = "/host", proc_root: str = "/proc",
                 dry_run: bool = False, timeout: float = 600.0,
                 sys_root: str = "/sys"):
        self.root = Path(root or "/")
        self.proc_root = Path(proc_root)
        self.sys_root = Path(sys_root)
        self.dry_run = dry_run
        self.timeout = timeout
        # count of writes, removals and mutating commands performed
        self.mutations = 0
        self._platform = None

    @classmethod
    def from_config(cls, config) -> "HostSystem":
        return cls(root=config.host_root, proc_root=config.proc_root,
                   dry_run=config.dry_run, timeout=config.command_timeout)

    def local(self) -> "HostSystem":
        """The agent's own root: same /proc and kernel, no chroot."""
        if not self.uses_chroot:
            return self
        return HostSystem(root="/", proc_root=str(self.proc_root),
                          dry_run=self.dry_run, timeout=self.timeout,
                          sys_root=str(self.sys_root))

    @property
    def uses_chroot(self) -> bool:
        return self.root != Path("/")

    @property
    def platform(self):
        if self._platform is None:
            text = self.read_text("/etc/os-release") or ""
            self._platform = platform_for(parse_os_release(text))
        return self._platform

    # ── filesystem ────────────────────────────────────────────────────────

    def path(self, host_path) -> Path:
        """Map an absolute path on the host to the agent's view of it."""
        return self.root / str(host_path).lstrip("/")

    def exists(self, host_path) -> bool:
        return self.path(host_path).exists()

    def read_text(self, host_path) -> str | None:
        """File contents, or None when the file does not exist."""
        path = self.path(host_path)
        try:
            with open(path) as fh:
                return fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateReadError(f"cannot read {host_path}: {exc}") from exc

    def write_text(self, host_path, content: str, mode: int | None = None) -> None:
        """Write a whole file; mode None keeps an existing file's mode."""
        path = self.path(host_path)
        if self.dry_run:
            action = "update" if path.exists() else "create"
            _dry(f"{action} file {host_path}")
            return
        if mode is None:
            mode = path.stat().st_mode & 0o7777 if path.exists() else 0o644
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as fh:
            fh.write(content)
        os.chmod(path, mode)
        self.mutations += 1
        _info(f"Wrote {host_path}")

    def is_file(self, host_path) -> bool:
        return self.path(host_path).is_file()

    def remove(self, host_path) -> bool:
        """Delete a file; a missing file is not an error.  True if removed."""
        path = self.path(host_path)
        if not path.exists():
            return False
        if not path.is_file():
            raise HostPathError(f"refusing to remove {host_path}: not a regular file")
        if self.dry_run:
            _dry(f"rm -f {host_path}")
            return True
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self.mutations += 1
        _info(f"Removed {host_path}")
        return True

    def list_dir(self, host_path) -> list:
        """Sorted file names in a directory; a missing directory is empty."""
        path = self.path(host_path)
        if not path.is_dir():
            return []
        return sorted(p.name for p in path.iterdir() if p.is_file())

    def prune_dir(self, host_path) -> None:
        """Remove a directory if it is empty."""
        path = self.path(host_path)
        if self.dry_run or not path.is_dir():
            return
        try:
            path.rmdir()
        except OSError:
            return
        self.mutations += 1

    def read_proc(self, rel: str) -> str | None:
        """Read a file under the live /proc (not the host root)."""
        path = self.proc_root / rel.lstrip("/")
        try:
            with open(path) as fh:
                return fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateReadError(f"cannot read {path}: {exc}") from exc

    # ── commands ──────────────────────────────────────────────────────────

    def _argv(self, cmd) -> list:
        cmd = [str(c) for c in cmd]
        if self.uses_chroot:
            return ["chroot", str(self.root)] + cmd
        return cmd

    def run_cmd(self, cmd, chroot: bool = True):
        """Execute a mutating command, or print it under dry-run.

        Raises CommandError on a non-zero exit or when the command runs past
        the configured timeout.
        """
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return None
        _info(f"Running: {pretty}")
        argv = self._argv(cmd) if chroot else [str(c) for c in cmd]
        try:
            result = subprocess.run(
                argv, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(cmd, None) from exc
        except OSError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc
        self.mutations += 1
        if result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
            raise CommandError(cmd, result.returncode,
                               (result.stdout or "") + (result.stderr or ""))
        return result

    def probe(self, cmd, chroot: bool = True):
        """Run a read-only query; the caller inspects the return code."""
        argv = self._argv(cmd) if chroot else [str(c) for c in cmd]
        try:
            return subprocess.run(
                argv, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise StateReadError(f"'{' '.join(argv)}' timed out") from exc
        except OSError as exc:
            raise StateReadError(f"cannot run '{' '.join(argv)}': {exc}") from exc

    def kernel_module_loaded(self, name: str) -> bool:
        """Loaded as a module or built into the running kernel."""
        name = name.replace("-", "_")
        text = self.read_proc("modules") or ""
        if any(line.split(" ", 1)[0] == name for line in text.splitlines()):
            return True
        return (self.sys_root / "module" / name).is_dir()

    def service_active(self, unit: str) -> bool:
        return self.probe(["systemctl", "is-active", "--quiet", unit]).returncode == 0
