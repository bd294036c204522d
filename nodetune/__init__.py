"""nodetune: per-node host configuration reconciliation."""

__version__ = "0.1.0"
