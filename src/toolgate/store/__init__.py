"""
Storage module for Toolgate.

This module provides SQLite-based persistence for policies, rules and the
audit history of every invocation attempt.

Tables:
    - tool_policies / invocation_rules: What administrators configured
    - invocation_records: One row per attempt, updated on each transition
    - defective_rule_reports: Rules skipped because they could not be evaluated

Design principles:
    - Ordered: rules come back in creation order
    - Versioned: every configuration write bumps a counter readers can watch
    - Auditable: input/output hashes on every record
    - Self-contained: a single .db file holds configuration and history
"""

from toolgate.store.base import AuditSink, RuleStore
from toolgate.store.db import GateDB, compute_hash

__all__ = [
    "AuditSink",
    "GateDB",
    "RuleStore",
    "compute_hash",
]
