"""
crit_ledger - deterministic critical-hit classification for a live content tree,
with durable history and restoration across re-renders.
"""

__version__ = "0.1.0"
