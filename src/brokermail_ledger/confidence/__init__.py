"""
Confidence scoring module.

Combines parser, resolver and reconciliation confidences.
Decides whether a candidate may be auto-inserted.
"""

from .scorer import ConfidenceScorer, ConfidenceThresholds

__all__ = [
    "ConfidenceScorer",
    "ConfidenceThresholds",
]
