"""
Exception types for the reaction engine.

Both are programming-contract violations: callers should fix the network
builder, not retry.
"""

from __future__ import annotations


class NetworkStructureError(RuntimeError):
    """
    Raised when the network structure breaks an invariant.

    Examples: an aggregated list entry missing after insertion, a list mutated
    after reset_connectivities, a non-positive overlap width between bounds.
    """
    pass


class UnsupportedOperationError(RuntimeError):
    """Raised by call surfaces kept for interface compatibility only."""
    pass
