"""Modules: one capability each, reconciled to present or absent.

Every module follows the same pass:

    check preconditions → migrate ownership → apply (present) | remove (absent)

and apply/remove are built from two shared steps.  ``converge`` compares the
desired serialization with what is on the host, writes only on a difference,
then activates and verifies.  ``retire`` deletes an owned artifact and
deactivates only when something was actually deleted.  A second pass over an
unchanged spec therefore performs no mutation at all.
"""

import re

from .blockinfile import (
    DEFAULT_BEGIN_MARKER,
    DEFAULT_END_MARKER,
    delete_text,
    insert_text,
    owner_markers,
)
from .console import _debug, _info, _skip, _warn
from .errors import (
    ActivationError,
    CommandError,
    ModuleError,
    NodetuneError,
    PreconditionError,
)
from .models import MODULE_ORDER
from .ownership import ArtifactId, is_owned_name, legacy_name, owner_slug, sanitize

SYSTEMD_DIR = "/etc/systemd/system"
SYSCTL_DIR = "/etc/sysctl.d"
MODULES_LOAD_DIR = "/etc/modules-load.d"
GRUB_DEFAULTS_DIR = "/etc/default/grub.d"
CRON_DIR = "/etc/cron.d"
HOSTS_FILE = "/etc/hosts"

MANAGED_HEADER = "# FILE MANAGED BY NODETUNE - DO NOT EDIT"

# systemctl stop: "unit not loaded"
_EXIT_UNIT_NOT_LOADED = 5


class Module:
    """Base class: the present/absent state machine around one spec section.

    Modules with ``needs_host_fs`` fail their precondition unless host
    filesystem access is enabled.  The others work on the host root when it
    is enabled and on the agent's own root (no chroot) when it is not.
    """

    kind = ""
    needs_host_fs = True

    def __init__(self, spec, owner: str, host, config):
        self.spec = spec
        self.owner = owner
        self.artifact = ArtifactId(self.kind, owner, spec.priority)
        if not self.needs_host_fs and not config.hostfs_enabled:
            host = host.local()
        self.host = host
        self.config = config
        # set when migrate_ownership removed a legacy artifact this pass
        self.migrated = False

    @property
    def name(self) -> str:
        return self.kind

    def is_present(self) -> bool:
        return self.spec.is_present()

    def reconcile(self) -> None:
        """Drive the host toward the section's state.

        Any failure comes back as ModuleError naming this module.
        """
        try:
            if not self.check_preconditions():
                return
            self.migrated = self.migrate_ownership()
            if self.is_present():
                _debug(f"applying module {self.kind}")
                self.apply()
            else:
                _debug(f"removing module {self.kind}")
                self.remove()
            _debug(f"module {self.kind} reconciled")
        except ModuleError:
            raise
        except (NodetuneError, OSError) as exc:
            raise ModuleError(self.kind, exc) from exc

    def check_preconditions(self) -> bool:
        """False means skip this pass; raising means fail it."""
        if self.needs_host_fs and not self.config.hostfs_enabled:
            raise PreconditionError(
                "host filesystem access is disabled (set HOSTFS_ENABLED)")
        return True

    def migrate_ownership(self) -> bool:
        """Purge the pre-ownership single-owner artifact.  True if removed."""
        return False

    def apply(self) -> None:
        raise NotImplementedError

    def remove(self) -> None:
        raise NotImplementedError

    # ── shared template ──────────────────────────────────────────────────

    def converge(self, path, content: str, activate=None, live=None,
                 verify=None, mode=None) -> bool:
        """Write *content* to *path* if it differs, then activate and verify.

        *live* is an extra liveness predicate: when the file already matches
        but live() is false, activation still runs.  Returns True when
        anything was done.
        """
        current = self.host.read_text(path)
        if current == content and (live is None or live()):
            _skip(f"{path} already up to date")
            return False
        if current != content:
            self.host.write_text(path, content, mode)
        if activate is not None:
            activate()
        if verify is not None and not self.host.dry_run:
            verify()
        return True

    def is_legacy(self, path: str) -> bool:
        """A pre-ownership artifact at *path*; owned names never qualify."""
        return (not is_owned_name(path.rsplit("/", 1)[-1])
                and self.host.is_file(path))

    def retire(self, path, deactivate=None) -> bool:
        """Delete an owned artifact; a missing one is not an error."""
        if not self.host.remove(path):
            return False
        if deactivate is not None:
            deactivate()
        return True

    def stop_unit(self, unit: str) -> None:
        try:
            self.host.run_cmd(["systemctl", "stop", unit])
        except CommandError as exc:
            if exc.returncode != _EXIT_UNIT_NOT_LOADED:
                raise

    def daemon_reload(self) -> None:
        self.host.run_cmd(["systemctl", "daemon-reload"])


# ── Marker-block modules ─────────────────────────────────────────────────────

class FileBlockModule(Module):
    """Owned text blocks inside arbitrary files."""

    kind = "file-block"

    def _markers(self, block) -> tuple:
        begin, end = owner_markers(self.owner)
        return block.begin_marker or begin, block.end_marker or end

    def _edit(self, filename: str, transform) -> bool:
        current = self.host.read_text(filename)
        if current is None:
            current = ""
        updated = transform(current)
        if updated == current:
            return False
        self.host.write_text(filename, updated)
        return True

    def migrate_ownership(self) -> bool:
        removed = False
        for block in self.spec.blocks:
            if block.begin_marker or not self.host.exists(block.filename):
                continue
            removed |= self._edit(block.filename, lambda text: delete_text(
                text, DEFAULT_BEGIN_MARKER, DEFAULT_END_MARKER))
        return removed

    def apply(self) -> None:
        for block in self.spec.blocks:
            begin, end = self._markers(block)
            if not self._edit(block.filename, lambda text: insert_text(
                    text, begin, end, block.content)):
                _skip(f"block in {block.filename} already up to date")

    def remove(self) -> None:
        for block in self.spec.blocks:
            if not self.host.exists(block.filename):
                continue
            begin, end = self._markers(block)
            self._edit(block.filename,
                       lambda text: delete_text(text, begin, end))


class HostsModule(FileBlockModule):
    """Owned name/address block in /etc/hosts."""

    kind = "hosts"
    needs_host_fs = False

    def _block(self) -> str:
        return "\n".join(f"{h.ip} {h.hostname}" for h in self.spec.hosts)

    def migrate_ownership(self) -> bool:
        if not self.host.exists(HOSTS_FILE):
            return False
        return self._edit(HOSTS_FILE, lambda text: delete_text(
            text, DEFAULT_BEGIN_MARKER, DEFAULT_END_MARKER))

    def apply(self) -> None:
        begin, end = owner_markers(self.owner, "HOSTS")
        block = self._block()
        if not self._edit(HOSTS_FILE,
                          lambda text: insert_text(text, begin, end, block)):
            _skip(f"{HOSTS_FILE} already up to date")

    def remove(self) -> None:
        if not self.host.exists(HOSTS_FILE):
            return
        begin, end = owner_markers(self.owner, "HOSTS")
        self._edit(HOSTS_FILE, lambda text: delete_text(text, begin, end))


# ── Packages ─────────────────────────────────────────────────────────────────

class PackagesModule(Module):
    """Install declared packages through the host's package manager.

    Opt-in: with package management or host filesystem access disabled the
    module warns and does nothing.  Packages are never removed.
    """

    kind = "packages"

    def check_preconditions(self) -> bool:
        if not self.config.packages_enabled:
            _warn("package management is disabled (set PACKAGES_ENABLED) "
                  "— skipping packages")
            return False
        if not self.config.hostfs_enabled:
            _warn("host filesystem access is disabled — skipping packages")
            return False
        return True

    def _installed(self, pkg) -> bool:
        platform = self.host.platform
        version = platform.parse_installed(
            self.host.probe(platform.package_query(pkg.name)))
        if version is None:
            return False
        if not pkg.version:
            return True
        return version == pkg.version or version.startswith(pkg.version + "-")

    def _missing(self) -> list:
        return [p for p in self.spec.packages if not self._installed(p)]

    def apply(self) -> None:
        missing = self._missing()
        if not missing:
            _skip("all packages already installed")
            return
        platform = self.host.platform
        specs = [platform.package_spec(p.name, p.version) for p in missing]
        try:
            self.host.run_cmd(platform.install_cmd(specs))
        except CommandError as exc:
            errors = [line for line in exc.output.splitlines()
                      if line.startswith("E:")]
            if not errors:
                raise
            raise CommandError(exc.cmd, exc.returncode,
                               "; ".join(errors)) from exc
        if self.host.dry_run:
            return
        still = self._missing()
        if still:
            names = ", ".join(p.name for p in still)
            raise ActivationError(f"packages not installed after install: {names}")
        _info(f"Installed {', '.join(specs)}")

    def remove(self) -> None:
        _info("packages are never removed — leaving installed packages in place")


# ── Kernel ───────────────────────────────────────────────────────────────────

class KernelModulesModule(Module):
    """Boot-time module list plus modprobe of anything not yet loaded.

    Absent removes the boot-time list only; loaded modules stay loaded.
    """

    kind = "kernel-modules"
    needs_host_fs = False

    @property
    def path(self) -> str:
        return f"{MODULES_LOAD_DIR}/{self.artifact.prefix()}.conf"

    def _not_loaded(self) -> list:
        return [m for m in self.spec.modules
                if not self.host.kernel_module_loaded(m)]

    def migrate_ownership(self) -> bool:
        return self.retire(f"{MODULES_LOAD_DIR}/{legacy_name()}.conf")

    def apply(self) -> None:
        content = "\n".join(self.spec.modules) + "\n"

        def activate():
            for mod in self._not_loaded():
                self.host.run_cmd(["modprobe", mod])

        def verify():
            missing = self._not_loaded()
            if missing:
                raise ActivationError(
                    f"kernel modules not loaded: {', '.join(missing)}")

        self.converge(self.path, content, activate=activate,
                      live=lambda: not self._not_loaded(), verify=verify)

    def remove(self) -> None:
        self.retire(self.path)


def _normalize_sysctl(value: str) -> str:
    return " ".join(value.split())


class KernelParametersModule(Module):
    """sysctl drop-in applied with ``sysctl -p`` and checked in /proc/sys."""

    kind = "kernel-parameters"
    needs_host_fs = False

    @property
    def path(self) -> str:
        return f"{SYSCTL_DIR}/{self.artifact.prefix()}.conf"

    def _drifted(self) -> list:
        drifted = []
        for param in self.spec.parameters:
            live = self.host.read_proc("sys/" + param.name.replace(".", "/"))
            if live is None or _normalize_sysctl(live) != _normalize_sysctl(param.value):
                drifted.append(param.name)
        return drifted

    def migrate_ownership(self) -> bool:
        return self.retire(f"{SYSCTL_DIR}/99-{legacy_name()}.conf")

    def apply(self) -> None:
        content = "".join(f"{p.name} = {p.value}\n" for p in self.spec.parameters)

        def verify():
            drifted = self._drifted()
            if drifted:
                raise ActivationError(
                    f"kernel parameters did not take effect: {', '.join(drifted)}")

        self.converge(
            self.path, content,
            activate=lambda: self.host.run_cmd(["sysctl", "-p", self.path]),
            live=lambda: not self._drifted(),
            verify=verify,
        )

    def remove(self) -> None:
        self.retire(self.path,
                    deactivate=lambda: self.host.run_cmd(["sysctl", "--system"]))


# ── systemd ──────────────────────────────────────────────────────────────────

class SystemdUnitsModule(Module):
    """Owned ``.service`` units, restarted on change and kept running."""

    kind = "systemd-units"

    def _units(self) -> list:
        """(unit file name, legacy unit file name, unit) for usable units."""
        out = []
        for unit in self.spec.units:
            if unit.name.endswith((".timer", ".socket")):
                _warn(f"unit '{unit.name}': only .service units are supported "
                      "— skipping")
                continue
            base = sanitize(unit.name.removesuffix(".service"))
            out.append((f"{self.artifact.scoped(base)}.service",
                        f"{legacy_name(base)}.service", unit))
        return out

    def migrate_ownership(self) -> bool:
        removed = False
        for _, legacy, _ in self._units():
            path = f"{SYSTEMD_DIR}/{legacy}"
            if self.is_legacy(path):
                self.stop_unit(legacy)
                removed |= self.host.remove(path)
        if removed:
            self.daemon_reload()
        return removed

    def apply(self) -> None:
        units = self._units()
        changed = []
        for unit_name, _, unit in units:
            path = f"{SYSTEMD_DIR}/{unit_name}"
            if self.host.read_text(path) != unit.file:
                self.host.write_text(path, unit.file)
                changed.append(unit_name)
        if changed:
            self.daemon_reload()

        for unit_name, _, _ in units:
            if unit_name in changed:
                self.host.run_cmd(["systemctl", "restart", unit_name])
            elif not self.host.service_active(unit_name):
                self.host.run_cmd(["systemctl", "start", unit_name])
            else:
                _skip(f"{unit_name} already active")
                continue
            if not self.host.dry_run and not self.host.service_active(unit_name):
                raise ActivationError(f"{unit_name} is not active after start")

    def remove(self) -> None:
        removed = False
        for unit_name, _, _ in self._units():
            path = f"{SYSTEMD_DIR}/{unit_name}"
            if not self.host.exists(path):
                continue
            self.stop_unit(unit_name)
            removed |= self.host.remove(path)
        if removed:
            self.daemon_reload()


class SystemdOverridesModule(Module):
    """Owned drop-ins for existing services and slices."""

    kind = "systemd-overrides"

    def _overrides(self) -> list:
        """(drop-in path, legacy drop-in path, override) for usable names."""
        out = []
        for override in self.spec.overrides:
            if not override.name.endswith((".service", ".slice")):
                _warn(f"override '{override.name}': name must end in .service "
                      "or .slice — skipping")
                continue
            prefix = self.artifact.at_priority(override.priority).prefix()
            dropin_dir = f"{SYSTEMD_DIR}/{override.name}.d"
            out.append((f"{dropin_dir}/{prefix}-override.conf",
                        f"{dropin_dir}/90-{legacy_name()}-override.conf",
                        override))
        return out

    def _restart(self, names: list) -> None:
        for name in names:
            if not name.endswith(".service"):
                continue
            self.host.run_cmd(["systemctl", "restart", name])
            if not self.host.dry_run and not self.host.service_active(name):
                raise ActivationError(f"{name} is not active after restart")

    def migrate_ownership(self) -> bool:
        removed = False
        for _, legacy, _ in self._overrides():
            removed |= self.host.remove(legacy)
        if removed:
            self.daemon_reload()
        return removed

    def apply(self) -> None:
        changed = []
        for path, _, override in self._overrides():
            body = override.file.rstrip("\n")
            content = f"{MANAGED_HEADER}\n{body}\n"
            if self.host.read_text(path) == content:
                _skip(f"{path} already up to date")
                continue
            self.host.write_text(path, content)
            changed.append(override.name)
        if changed:
            self.daemon_reload()
            self._restart(changed)

    def remove(self) -> None:
        removed = []
        for path, _, override in self._overrides():
            if self.host.remove(path):
                self.host.prune_dir(path.rsplit("/", 1)[0])
                removed.append(override.name)
        if removed:
            self.daemon_reload()
            self._restart(removed)


# ── Certificates ─────────────────────────────────────────────────────────────

def _squash(text: str) -> str:
    return "".join(text.split())


class CertificatesModule(Module):
    """CA certificates in an owner directory of the trust store."""

    kind = "certificates"

    @property
    def directory(self) -> str:
        return f"{self.host.platform.ca_dir}/{self.artifact.stem()}"

    def _filename(self, name: str) -> str:
        suffix = self.host.platform.cert_suffix
        if suffix and not name.endswith(suffix):
            return name + suffix
        return name

    def _in_bundle(self) -> bool:
        bundle = _squash(self.host.read_text(self.host.platform.ca_bundle) or "")
        return all(_squash(c.content) in bundle for c in self.spec.certificates)

    def _update_trust(self) -> None:
        self.host.run_cmd(self.host.platform.ca_update)

    def migrate_ownership(self) -> bool:
        removed = False
        for cert in self.spec.certificates:
            legacy = legacy_name(self._filename(cert.filename))
            path = f"{self.host.platform.ca_dir}/{legacy}"
            if self.is_legacy(path):
                removed |= self.host.remove(path)
        return removed

    def apply(self) -> None:
        wanted = {self._filename(c.filename): c.content
                  for c in self.spec.certificates}
        changed = self.migrated
        for filename, content in wanted.items():
            path = f"{self.directory}/{filename}"
            if self.host.read_text(path) != content:
                self.host.write_text(path, content)
                changed = True
        for stale in self.host.list_dir(self.directory):
            if stale not in wanted:
                changed |= self.host.remove(f"{self.directory}/{stale}")

        if not changed and self._in_bundle():
            _skip("certificates already trusted")
            return
        self._update_trust()
        if not self.host.dry_run and not self._in_bundle():
            raise ActivationError(
                f"certificates missing from {self.host.platform.ca_bundle} "
                "after update")

    def remove(self) -> None:
        changed = self.migrated
        for filename in self.host.list_dir(self.directory):
            changed |= self.host.remove(f"{self.directory}/{filename}")
        self.host.prune_dir(self.directory)
        if changed:
            self._update_trust()


# ── cron ─────────────────────────────────────────────────────────────────────

class CrontabsModule(Module):
    """One owned /etc/cron.d file per entry."""

    kind = "crontabs"

    def _path(self, entry) -> str:
        return f"{CRON_DIR}/{self.artifact.scoped(sanitize(entry.name))}"

    def _ensure_cron_running(self) -> None:
        service = self.host.platform.cron_service
        if self.host.service_active(service):
            return
        self.host.run_cmd(["systemctl", "start", service])
        if not self.host.dry_run and not self.host.service_active(service):
            raise ActivationError(f"{service} is not active")

    def migrate_ownership(self) -> bool:
        removed = False
        for entry in self.spec.entries:
            path = f"{CRON_DIR}/{legacy_name(sanitize(entry.name))}"
            if self.is_legacy(path):
                removed |= self.host.remove(path)
        return removed

    def apply(self) -> None:
        self._ensure_cron_running()
        for entry in self.spec.entries:
            self.converge(self._path(entry),
                          f"{MANAGED_HEADER}\n{entry.line()}\n", mode=0o644)

    def remove(self) -> None:
        for entry in self.spec.entries:
            self.retire(self._path(entry))


# ── Bootloader ───────────────────────────────────────────────────────────────

_MENU_RE = re.compile(r"""^(\s*)(submenu|menuentry)\s+['"]([^'"]+)['"]""")


def grub_default_entry(grub_cfg: str, kernel_version: str) -> str | None:
    """GRUB_DEFAULT value selecting *kernel_version*, or None.

    Entries nested in a submenu are addressed as ``<submenu>><entry>``;
    recovery-mode entries are never chosen.
    """
    submenu = ""
    for line in grub_cfg.splitlines():
        m = _MENU_RE.match(line)
        if not m:
            continue
        indent, kind, title = m.groups()
        if kind == "submenu":
            submenu = title
            continue
        if "recovery mode" in title or kernel_version not in title:
            continue
        if submenu and indent:
            return f"{submenu}>{title}"
        return title
    return None


class GrubModule(Module):
    """Kernel command line and default kernel via a grub.d drop-in."""

    kind = "bootloader"

    @property
    def path(self) -> str:
        return f"{GRUB_DEFAULTS_DIR}/{self.artifact.prefix()}.cfg"

    def _default_entry(self) -> str:
        version = self.spec.kernel_version
        if not self.host.exists(f"/boot/vmlinuz-{version}"):
            raise PreconditionError(f"no boot image /boot/vmlinuz-{version}")
        for cfg in self.host.platform.grub_cfg_paths:
            text = self.host.read_text(cfg)
            if text is None:
                continue
            entry = grub_default_entry(text, version)
            if entry:
                return entry
        raise PreconditionError(f"no grub menu entry for kernel {version}")

    def _content(self) -> str:
        lines = []
        if self.spec.cmdline_args:
            args = " ".join(self.spec.cmdline_args)
            lines.append(f'GRUB_CMDLINE_LINUX="$GRUB_CMDLINE_LINUX {args}"')
        if self.spec.kernel_version:
            lines.append(f'GRUB_DEFAULT="{self._default_entry()}"')
        begin, end = owner_markers(self.owner, "GRUB")
        return insert_text("", begin, end, "\n".join(lines))

    def _update_grub(self) -> None:
        self.host.run_cmd(self.host.platform.grub_update_cmd(self.host))
        _warn("bootloader configuration changed — reboot required to take effect")

    def migrate_ownership(self) -> bool:
        return self.host.remove(f"{GRUB_DEFAULTS_DIR}/99-{legacy_name()}.cfg")

    def apply(self) -> None:
        # a purged legacy drop-in still needs grub regenerated
        self.converge(self.path, self._content(), activate=self._update_grub,
                      live=lambda: not self.migrated)

    def remove(self) -> None:
        if not self.retire(self.path) and not self.migrated:
            return
        self._update_grub()


MODULE_TYPES = {
    cls.kind: cls for cls in (
        FileBlockModule,
        HostsModule,
        PackagesModule,
        KernelModulesModule,
        KernelParametersModule,
        SystemdUnitsModule,
        CertificatesModule,
        SystemdOverridesModule,
        CrontabsModule,
        GrubModule,
    )
}


def build_modules(obj, host, config) -> list:
    """Modules for every non-empty section of *obj*, in execution order."""
    owner = owner_slug(obj.metadata.namespace, obj.metadata.name)
    modules = []
    for kind, attr in MODULE_ORDER:
        spec = getattr(obj.spec, attr)
        if spec.is_empty():
            continue
        modules.append(MODULE_TYPES[kind](spec, owner, host, config))
    return modules
