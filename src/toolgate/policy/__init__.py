"""
Policy evaluation for Toolgate.

Key concepts:
    - Operator evaluation: one rule predicate against one argument value
    - PolicyResolver: all applicable rules into one verdict, most
      restrictive action wins
    - PolicySnapshotCache: versioned snapshots so a policy edit never
      produces a verdict mixing old and new rules

Evaluation is pure. Malformed rules are skipped and reported, never fatal.
"""

from toolgate.policy.operators import MISSING, evaluate, lookup_argument, validate_operand
from toolgate.policy.resolver import PolicyResolver
from toolgate.policy.snapshot import PolicySnapshotCache

__all__ = [
    "MISSING",
    "PolicyResolver",
    "PolicySnapshotCache",
    "evaluate",
    "lookup_argument",
    "validate_operand",
]
