"""Agent configuration.

Built once (environment first, CLI flags on top) and handed to the driver
and every module.  Nothing below the CLI reads the environment.
"""

import os

from pydantic import BaseModel, Field

DEFAULT_STORE_PATH = "/var/lib/nodetune/store"
DEFAULT_HOST_ROOT = "/host"

_TRUE = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE


class AgentConfig(BaseModel):
    node_name: str = ""
    store_path: str = DEFAULT_STORE_PATH
    # "/" means commands run directly instead of through chroot
    host_root: str = DEFAULT_HOST_ROOT
    proc_root: str = "/proc"

    hostfs_enabled: bool = False
    packages_enabled: bool = False
    ignore_node_ready: bool = False
    dry_run: bool = False

    resync_interval: float = Field(300.0, gt=0)
    not_ready_backoff: float = Field(300.0, gt=0)
    poll_interval: float = Field(5.0, gt=0)
    command_timeout: float = Field(600.0, gt=0)
    status_retries: int = Field(5, ge=1)

    @classmethod
    def from_env(cls, **overrides) -> "AgentConfig":
        """Read the environment toggles, then apply explicit overrides.

        Overrides whose value is None are ignored so argparse defaults do not
        clobber environment values.
        """
        values = {
            "node_name": os.environ.get("NODE_NAME", ""),
            "store_path": os.environ.get("NODETUNE_STORE", DEFAULT_STORE_PATH),
            "host_root": os.environ.get("NODETUNE_HOST_ROOT", DEFAULT_HOST_ROOT),
            "hostfs_enabled": _env_flag("HOSTFS_ENABLED"),
            "packages_enabled": _env_flag("PACKAGES_ENABLED"),
            "ignore_node_ready": _env_flag("IGNORE_NODE_READY"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
