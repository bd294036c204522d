"""nodetune command line."""

import argparse
import json
import os
import sys

import yaml
from pydantic import ValidationError

from .agent import Agent
from .config import AgentConfig
from .console import _I, _error, _info, _warn, configure
from .driver import Driver
from .errors import NodetuneError
from .host import HostSystem
from .models import DEFAULT_NAMESPACE, HostConfig, Node, NodeStatus, make_key
from .store import NodeRegistry, ObjectStore
from .validator import validate


def load_manifests(path: str) -> list:
    """HostConfig documents from a YAML/JSON file (``-`` reads stdin)."""
    if path == "-":
        docs = list(yaml.safe_load_all(sys.stdin))
    else:
        with open(path) as fh:
            docs = list(yaml.safe_load_all(fh))
    return [HostConfig.model_validate(doc) for doc in docs if doc]


def _parse_labels(pairs) -> dict:
    labels = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"label '{pair}' is not key=value")
        labels[key] = value
    return labels


def _key(name: str, namespace: str) -> str:
    return name if "/" in name else make_key(namespace, name)


# ── commands ─────────────────────────────────────────────────────────────────

def cmd_agent(args, config: AgentConfig) -> int:
    if not config.node_name:
        _error("node name is not set (use --node or NODE_NAME)")
        return 1
    if os.geteuid() != 0 and not config.dry_run:
        _error("nodetune agent must run as root (or use --dry-run)")
        return 1
    store = ObjectStore(config.store_path)
    registry = NodeRegistry(config.store_path)
    host = HostSystem.from_config(config)
    agent = Agent(Driver(store, registry, host, config), store, registry, config)
    if args.once:
        results = agent.run_once()
        return 1 if any(r.error for r in results.values()) else 0
    try:
        agent.run()
    except KeyboardInterrupt:
        agent.stop()
        _warn("Interrupted — agent stopped")
    return 0


def cmd_apply(args, config: AgentConfig) -> int:
    store = ObjectStore(config.store_path)
    try:
        objs = load_manifests(args.filename)
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        _error(f"cannot load {args.filename}: {exc}")
        return 1
    rc = 0
    for obj in objs:
        try:
            stored = store.apply(obj, admit=validate)
        except NodetuneError as exc:
            _error(f"{obj.key}: {exc}")
            rc = 1
            continue
        _info(f"hostconfig {stored.key} applied "
              f"(generation {stored.metadata.generation})")
    return rc


def cmd_delete(args, config: AgentConfig) -> int:
    store = ObjectStore(config.store_path)
    key = _key(args.name, args.namespace)
    try:
        gone = store.delete(key)
    except NodetuneError as exc:
        _error(str(exc))
        return 1
    if gone:
        _info(f"hostconfig {key} deleted")
    else:
        _info(f"hostconfig {key} marked for deletion "
              "(waiting for node agents to release it)")
    return 0


def _print_status(obj: HostConfig) -> None:
    active = next((c for c in obj.status.conditions if c.status), None)
    state = f"{active.type.value}: {active.reason}" if active else "Unknown"
    deleting = "  [deleting]" if obj.is_deleting else ""
    print(f"{obj.key}  generation={obj.metadata.generation}  {state}{deleting}")
    for node, outcome in sorted(obj.status.nodes.items()):
        icon = {NodeStatus.AVAILABLE: _I.CHECK,
                NodeStatus.ERROR: _I.ERROR}.get(outcome.status, _I.SYNC)
        line = (f"    {icon}  {node}: {outcome.status.value} "
                f"(generation {outcome.last_generation})")
        if outcome.error:
            line += f" — {outcome.error}"
        print(line)


def cmd_status(args, config: AgentConfig) -> int:
    store = ObjectStore(config.store_path)
    try:
        if args.name:
            objs = [store.get(_key(args.name, args.namespace))]
        else:
            objs = store.list_objects()
    except NodetuneError as exc:
        _error(str(exc))
        return 1
    if args.json:
        json.dump([o.model_dump(mode="json", by_alias=True) for o in objs],
                  sys.stdout, indent=2)
        print()
        return 0
    for obj in objs:
        _print_status(obj)
    return 0


def cmd_node_register(args, config: AgentConfig) -> int:
    registry = NodeRegistry(config.store_path)
    try:
        labels = _parse_labels(args.label)
    except argparse.ArgumentTypeError as exc:
        _error(str(exc))
        return 1
    node = registry.register(Node(name=args.name, labels=labels,
                                  ready=not args.not_ready))
    _info(f"node {node.name} registered "
          f"({'ready' if node.ready else 'not ready'}, {len(node.labels)} labels)")
    return 0


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="nodetune",
        description="Reconcile host configuration (sysctl, kernel modules, "
                    "systemd, packages, files) on cluster nodes.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  nodetune apply -f web.yaml                    # admit and store a HostConfig
  nodetune node register n1 --label env=prod    # make a node known
  sudo nodetune agent --node n1 --hostfs        # run the node agent
  sudo nodetune agent --node n1 --once          # a single reconcile pass
  nodetune --dry-run agent --node n1 --once     # preview without changes
  nodetune status web                           # per-node outcomes
  nodetune delete web
""",
    )
    p.add_argument(
        "--store", default=None,
        help="object store directory (default: $NODETUNE_STORE or "
             "/var/lib/nodetune/store)",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print writes and commands without executing them",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command and per-file output; show only banners, "
             "warnings, and errors",
    )
    p.add_argument(
        "--verbose", action="store_true",
        help="print module-level debug traces",
    )
    sub = p.add_subparsers(dest="command", required=True)

    agent = sub.add_parser("agent", help="run the node agent")
    agent.add_argument("--node", default=None,
                       help="this node's name (default: $NODE_NAME)")
    agent.add_argument("--host-root", default=None,
                       help="host filesystem root (default: $NODETUNE_HOST_ROOT "
                            "or /host; '/' runs without chroot)")
    agent.add_argument("--hostfs", action="store_const", const=True, default=None,
                       help="host filesystem is reachable ($HOSTFS_ENABLED)")
    agent.add_argument("--packages", action="store_const", const=True,
                       default=None,
                       help="enable package management ($PACKAGES_ENABLED)")
    agent.add_argument("--ignore-node-ready", action="store_const", const=True,
                       default=None,
                       help="reconcile even when the node is not ready "
                            "($IGNORE_NODE_READY)")
    agent.add_argument("--resync", type=float, default=None,
                       help="seconds between periodic resyncs (default 300)")
    agent.add_argument("--poll", type=float, default=None,
                       help="seconds between store polls (default 5)")
    agent.add_argument("--once", action="store_true",
                       help="reconcile every HostConfig once and exit")
    agent.set_defaults(func=cmd_agent)

    apply = sub.add_parser("apply", help="admit and store HostConfig manifests")
    apply.add_argument("-f", "--filename", required=True,
                       help="YAML or JSON manifest ('-' for stdin)")
    apply.set_defaults(func=cmd_apply)

    delete = sub.add_parser("delete", help="delete a HostConfig")
    delete.add_argument("name", help="NAME or NAMESPACE/NAME")
    delete.add_argument("-n", "--namespace", default=DEFAULT_NAMESPACE)
    delete.set_defaults(func=cmd_delete)

    status = sub.add_parser("status", help="show HostConfig status")
    status.add_argument("name", nargs="?", default=None,
                        help="NAME or NAMESPACE/NAME (default: all)")
    status.add_argument("-n", "--namespace", default=DEFAULT_NAMESPACE)
    status.add_argument("--json", action="store_true",
                        help="print the full documents as JSON")
    status.set_defaults(func=cmd_status)

    node = sub.add_parser("node", help="manage the node registry")
    node_sub = node.add_subparsers(dest="node_command", required=True)
    register = node_sub.add_parser("register", help="register or relabel a node")
    register.add_argument("name")
    register.add_argument("--label", action="append", default=[],
                          metavar="KEY=VALUE", help="node label (repeatable)")
    register.add_argument("--not-ready", action="store_true",
                          help="record the node as not ready")
    register.set_defaults(func=cmd_node_register)
    return p


def config_from_args(args) -> AgentConfig:
    return AgentConfig.from_env(
        node_name=getattr(args, "node", None),
        store_path=args.store,
        host_root=getattr(args, "host_root", None),
        hostfs_enabled=getattr(args, "hostfs", None),
        packages_enabled=getattr(args, "packages", None),
        ignore_node_ready=getattr(args, "ignore_node_ready", None),
        resync_interval=getattr(args, "resync", None),
        poll_interval=getattr(args, "poll", None),
        dry_run=args.dry_run or None,
    )


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure(quiet=args.quiet, verbose=args.verbose)
    try:
        config = config_from_args(args)
    except ValidationError as exc:
        _error(f"invalid configuration: {exc}")
        sys.exit(2)
    sys.exit(args.func(args, config))


if __name__ == "__main__":
    main()
