"""
VisitProof runtime wiring.
"""

from visitproof.runtime.context import RuntimeContext

__all__ = ["RuntimeContext"]
