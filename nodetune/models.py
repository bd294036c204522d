"""Document models: HostConfig, its module payloads, status, and nodes.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .blockinfile import is_reserved_marker

API_VERSION = "nodetune.io/v1"
DEFAULT_PRIORITY = 50
DEFAULT_NAMESPACE = "default"

# RFC 1123 label (namespaces) and subdomain (names)
DNS_LABEL = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
DNS_SUBDOMAIN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"


class _Doc(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class State(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


# ── Module payloads ──────────────────────────────────────────────────────────

class ModuleSpec(_Doc):
    """Common shape of every module section: a state and a priority."""

    state: State = State.PRESENT
    priority: int = Field(DEFAULT_PRIORITY, ge=0, le=99)

    def items(self) -> list:
        raise NotImplementedError

    def is_empty(self) -> bool:
        return not self.items()

    def is_present(self) -> bool:
        """True when the section declares something and wants it present."""
        return not self.is_empty() and self.state == State.PRESENT


class FileBlock(_Doc):
    filename: str
    content: str
    # empty markers fall back to owner-scoped defaults
    begin_marker: str = ""
    end_marker: str = ""

    @field_validator("begin_marker", "end_marker")
    @classmethod
    def _not_reserved(cls, marker: str) -> str:
        if marker and is_reserved_marker(marker):
            raise ValueError(f"marker {marker!r} is reserved for nodetune's own blocks")
        return marker


class BlockInFiles(ModuleSpec):
    blocks: list[FileBlock] = Field(default_factory=list)

    def items(self) -> list:
        return self.blocks


class HostEntry(_Doc):
    hostname: str
    ip: str


class Hosts(ModuleSpec):
    hosts: list[HostEntry] = Field(default_factory=list)

    def items(self) -> list:
        return self.hosts


class Package(_Doc):
    name: str
    version: str = ""


class Packages(ModuleSpec):
    packages: list[Package] = Field(default_factory=list)

    def items(self) -> list:
        return self.packages


class KernelModules(ModuleSpec):
    modules: list[str] = Field(default_factory=list)

    def items(self) -> list:
        return self.modules


class KernelParameter(_Doc):
    name: str
    value: str


class KernelParameters(ModuleSpec):
    parameters: list[KernelParameter] = Field(default_factory=list)

    def items(self) -> list:
        return self.parameters


class SystemdUnit(_Doc):
    name: str
    file: str


class SystemdUnits(ModuleSpec):
    units: list[SystemdUnit] = Field(default_factory=list)

    def items(self) -> list:
        return self.units


class Certificate(_Doc):
    filename: str
    content: str


class Certificates(ModuleSpec):
    certificates: list[Certificate] = Field(default_factory=list)

    def items(self) -> list:
        return self.certificates


class SystemdOverride(_Doc):
    # must end in .service or .slice
    name: str
    file: str
    priority: int | None = Field(None, ge=0, le=99)


class SystemdOverrides(ModuleSpec):
    overrides: list[SystemdOverride] = Field(default_factory=list)

    def items(self) -> list:
        return self.overrides


SpecialTime = Literal["reboot", "yearly", "annually", "monthly", "weekly", "daily", "hourly"]


class Crontab(_Doc):
    name: str
    job: str
    user: str = "root"
    special_time: SpecialTime | None = None
    minute: str = "*"
    hour: str = "*"
    day_of_month: str = "*"
    month: str = "*"
    day_of_week: str = "*"

    def line(self) -> str:
        if self.special_time:
            when = f"@{self.special_time}"
        else:
            when = " ".join((self.minute, self.hour, self.day_of_month,
                             self.month, self.day_of_week))
        return f"{when} {self.user} {self.job} # {self.name}"


class Crontabs(ModuleSpec):
    entries: list[Crontab] = Field(default_factory=list)

    def items(self) -> list:
        return self.entries


class GrubKernelConfig(ModuleSpec):
    kernel_version: str = ""
    cmdline_args: list[str] = Field(default_factory=list, alias="args")

    def items(self) -> list:
        head = [self.kernel_version] if self.kernel_version else []
        return head + list(self.cmdline_args)


# ── HostConfig ───────────────────────────────────────────────────────────────

class SelectorRequirement(_Doc):
    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)


class HostConfigSpec(_Doc):
    node_selector: list[SelectorRequirement] = Field(default_factory=list)

    block_in_files: BlockInFiles = Field(default_factory=BlockInFiles)
    hosts: Hosts = Field(default_factory=Hosts)
    packages: Packages = Field(default_factory=Packages)
    kernel_modules: KernelModules = Field(default_factory=KernelModules)
    kernel_parameters: KernelParameters = Field(default_factory=KernelParameters)
    systemd_units: SystemdUnits = Field(default_factory=SystemdUnits)
    certificates: Certificates = Field(default_factory=Certificates)
    systemd_overrides: SystemdOverrides = Field(default_factory=SystemdOverrides)
    crontabs: Crontabs = Field(default_factory=Crontabs)
    grub_kernel_config: GrubKernelConfig = Field(default_factory=GrubKernelConfig)


# (module type, spec attribute) in execution order
MODULE_ORDER = (
    ("file-block", "block_in_files"),
    ("hosts", "hosts"),
    ("packages", "packages"),
    ("kernel-modules", "kernel_modules"),
    ("kernel-parameters", "kernel_parameters"),
    ("systemd-units", "systemd_units"),
    ("certificates", "certificates"),
    ("systemd-overrides", "systemd_overrides"),
    ("crontabs", "crontabs"),
    ("bootloader", "grub_kernel_config"),
)


class NodeStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    AVAILABLE = "Available"
    ERROR = "Error"


class NodeOutcome(_Doc):
    last_generation: int = 0
    status: NodeStatus = NodeStatus.IN_PROGRESS
    error: str = ""


class Condition(_Doc):
    type: NodeStatus
    status: bool = False
    reason: str = ""
    last_transition_time: datetime | None = None


class HostConfigStatus(_Doc):
    nodes: dict[str, NodeOutcome] = Field(default_factory=dict)
    conditions: list[Condition] = Field(default_factory=list)

    def condition(self, kind: NodeStatus) -> Condition | None:
        for cond in self.conditions:
            if cond.type == kind:
                return cond
        return None


class ObjectMeta(_Doc):
    name: str = Field(max_length=253, pattern=DNS_SUBDOMAIN)
    namespace: str = Field(DEFAULT_NAMESPACE, max_length=63, pattern=DNS_LABEL)
    generation: int = 0
    resource_version: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = None


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple:
    """'ns/name' → (ns, name); a bare name lands in the default namespace."""
    namespace, sep, name = key.partition("/")
    if not sep:
        return DEFAULT_NAMESPACE, namespace
    return namespace, name


class HostConfig(_Doc):
    api_version: str = API_VERSION
    kind: Literal["HostConfig"] = "HostConfig"
    metadata: ObjectMeta
    spec: HostConfigSpec = Field(default_factory=HostConfigSpec)
    status: HostConfigStatus = Field(default_factory=HostConfigStatus)

    @property
    def key(self) -> str:
        return make_key(self.metadata.namespace, self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def present_modules(self) -> set:
        """Module types this object declares present."""
        return {
            kind for kind, attr in MODULE_ORDER
            if getattr(self.spec, attr).is_present()
        }


class Node(_Doc):
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    ready: bool = True
