"""Argument refinement against page snapshots."""
from stepwise.src.refinement.bridge import RefinementBridge, parse_arguments, truncate_snapshot

__all__ = ["RefinementBridge", "parse_arguments", "truncate_snapshot"]
