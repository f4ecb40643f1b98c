"""
SQLite storage for Toolgate.

One database file holds both the rule store (policies and their rules) and
the audit sink (invocation records and defective-rule reports).

Design Principles:
    - Rules come back in creation order, which tie-breaking depends on
    - Deleting a policy cascades to its rules
    - Invocation records are appended and updated, never deleted
    - Every write is one committed statement group; no transaction is held
      open across a provider call
    - Every policy/rule write bumps a version counter in the same
      transaction, so cached snapshots in any process can be invalidated

Tables:
    - tool_policies: Named policies scoped to a tool (pattern) and agent
    - invocation_rules: Per-argument rules, owned by a policy
    - invocation_records: One row per invocation attempt
    - defective_rule_reports: Rules skipped during resolution
"""

import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Generator

from pydantic import ValidationError

from toolgate.errors import (
    NotFoundError,
    RuleLimitExceededError,
    RuleValidationError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from toolgate.policy.operators import validate_operand
from toolgate.schema import (
    DefectiveRule,
    InvocationOutcome,
    InvocationRecord,
    InvocationRule,
    InvocationState,
    InvocationVerdict,
    PolicyDocument,
    RuleAction,
    RuleOperator,
    ToolPolicy,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

DEFAULT_MAX_RULES_PER_POLICY = 200

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Single-row counter bumped by every policy or rule write
CREATE TABLE IF NOT EXISTS policy_version (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_policies (
    policy_id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    name TEXT NOT NULL UNIQUE,
    tool_name TEXT NOT NULL,
    agent_id TEXT,
    allow_untrusted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invocation_rules (
    rule_id TEXT PRIMARY KEY,
    tool_policy_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    argument_name TEXT NOT NULL,
    operator TEXT NOT NULL,
    value TEXT NOT NULL,
    action TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tool_policy_id) REFERENCES tool_policies(policy_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS invocation_records (
    record_id TEXT PRIMARY KEY,
    tool_name TEXT NOT NULL,
    agent_id TEXT,
    session_id TEXT,
    args_json TEXT NOT NULL,
    state TEXT NOT NULL,
    outcome TEXT,
    verdict_json TEXT,
    reason TEXT,
    output_json TEXT,
    error TEXT,
    input_hash TEXT NOT NULL,
    output_hash TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS defective_rule_reports (
    report_id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    tool_policy_id TEXT NOT NULL,
    error TEXT NOT NULL,
    error_code INTEGER NOT NULL,
    reported_at TEXT NOT NULL,
    FOREIGN KEY (record_id) REFERENCES invocation_records(record_id)
);

CREATE INDEX IF NOT EXISTS idx_rules_policy ON invocation_rules(tool_policy_id, position);
CREATE INDEX IF NOT EXISTS idx_policies_agent ON tool_policies(agent_id);
CREATE INDEX IF NOT EXISTS idx_records_created_at ON invocation_records(created_at);
CREATE INDEX IF NOT EXISTS idx_defects_record ON defective_rule_reports(record_id);
"""

_UNSET: Any = object()


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class GateDB:
    """
    SQLite database implementing the rule store and the audit sink.

    Usage:
        with GateDB("toolgate.db") as db:
            policy = db.create_policy("protect-etc", tool_name="fs.read")
            db.create_rule(policy.id, "path", "matches_regex", "^/etc/", "deny")
            policies = db.policies_for("fs.read", agent_id="agent-1")

    The connection is shared between threads; a lock serializes access.
    """

    def __init__(
        self,
        db_path: str | Path,
        max_rules_per_policy: int = DEFAULT_MAX_RULES_PER_POLICY,
    ) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, created if missing.
                     ":memory:" gives a private in-memory database.
            max_rules_per_policy: Upper bound on rules held by one policy
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self.max_rules_per_policy = max_rules_per_policy
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        try:
            with self._lock:
                self._conn.executescript(CREATE_TABLES_SQL).close()
                row = self._conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                ).fetchone()
                if row is None:
                    self._conn.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now_iso()),
                    )
                self._conn.execute(
                    "INSERT OR IGNORE INTO policy_version (id, version) VALUES (1, 0)"
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def _write(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        """Run one write as a single transaction, mapping sqlite errors."""
        conn = self._require_conn(operation)
        with self._lock:
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageWriteError(
                    operation=operation,
                    underlying_error=str(e),
                ) from e
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _read(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        conn = self._require_conn(operation)
        with self._lock:
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation=operation,
                    underlying_error=str(e),
                ) from e

    def _require_conn(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation=operation,
                message="Database connection is closed",
            )
        return self._conn

    def _bump_version(self, conn: sqlite3.Connection) -> None:
        conn.execute("UPDATE policy_version SET version = version + 1 WHERE id = 1")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "GateDB":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def version(self) -> int:
        """Counter bumped by every policy or rule write."""
        with self._read("version") as conn:
            row = conn.execute("SELECT version FROM policy_version WHERE id = 1").fetchone()
            return row["version"] if row else 0

    # =========================================================================
    # Policy Operations
    # =========================================================================

    def create_policy(
        self,
        name: str,
        tool_name: str,
        agent_id: str | None = None,
        allow_usage_when_untrusted_data_is_present: bool = False,
    ) -> ToolPolicy:
        """
        Create a tool policy with no rules.

        Args:
            name: Unique policy name
            tool_name: Tool name or fnmatch pattern for a tool class
            agent_id: Agent the policy applies to; None for every agent
            allow_usage_when_untrusted_data_is_present: See ToolPolicy

        Returns:
            The created ToolPolicy
        """
        policy = ToolPolicy(
            name=name,
            tool_name=tool_name,
            agent_id=agent_id,
            allow_usage_when_untrusted_data_is_present=allow_usage_when_untrusted_data_is_present,
        )
        created_at = policy.created_at.isoformat()
        with self._write("create_policy") as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM tool_policies").fetchone()[0]
            conn.execute(
                """
                INSERT INTO tool_policies (
                    policy_id, seq, name, tool_name, agent_id,
                    allow_untrusted, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    policy.id,
                    seq,
                    policy.name,
                    policy.tool_name,
                    policy.agent_id,
                    int(policy.allow_usage_when_untrusted_data_is_present),
                    created_at,
                    created_at,
                ),
            )
            self._bump_version(conn)
        logger.info("Created policy %s (%s) for tool %s", policy.name, policy.id, policy.tool_name)
        return policy

    def get_policy(self, policy_id: str) -> ToolPolicy | None:
        """Get a policy with its rules, or None if it doesn't exist."""
        with self._read("get_policy") as conn:
            row = conn.execute(
                "SELECT * FROM tool_policies WHERE policy_id = ?",
                (policy_id,),
            ).fetchone()
            if row is None:
                return None
            return self._policy_from_row(row, self._rules_for(conn, [policy_id]))

    def get_policy_by_name(self, name: str) -> ToolPolicy | None:
        """Get a policy by its unique name."""
        with self._read("get_policy_by_name") as conn:
            row = conn.execute(
                "SELECT * FROM tool_policies WHERE name = ?",
                (name,),
            ).fetchone()
            if row is None:
                return None
            return self._policy_from_row(row, self._rules_for(conn, [row["policy_id"]]))

    def list_policies(self, tool_name: str | None = None) -> list[ToolPolicy]:
        """
        List policies in creation order.

        Args:
            tool_name: Only policies declared for exactly this tool name
        """
        with self._read("list_policies") as conn:
            if tool_name is None:
                rows = conn.execute("SELECT * FROM tool_policies ORDER BY seq").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tool_policies WHERE tool_name = ? ORDER BY seq",
                    (tool_name,),
                ).fetchall()
            rules = self._rules_for(conn, [r["policy_id"] for r in rows])
            return [self._policy_from_row(r, rules) for r in rows]

    def policies_for(self, tool_name: str, agent_id: str | None = None) -> list[ToolPolicy]:
        """
        Policies applicable to one tool call.

        A policy applies when its tool_name equals the tool or matches it as
        a glob, and it is either global (no agent) or scoped to this agent.
        Policies come back in creation order, each with its rules in
        creation order. The whole set is read under one lock.
        """
        with self._read("policies_for") as conn:
            if agent_id is None:
                rows = conn.execute(
                    "SELECT * FROM tool_policies WHERE agent_id IS NULL ORDER BY seq"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tool_policies WHERE agent_id IS NULL OR agent_id = ? ORDER BY seq",
                    (agent_id,),
                ).fetchall()
            rows = [
                r for r in rows
                if r["tool_name"] == tool_name or fnmatchcase(tool_name, r["tool_name"])
            ]
            rules = self._rules_for(conn, [r["policy_id"] for r in rows])
            return [self._policy_from_row(r, rules) for r in rows]

    def update_policy(
        self,
        policy_id: str,
        name: str | None = None,
        tool_name: str | None = None,
        agent_id: str | None = _UNSET,
        allow_usage_when_untrusted_data_is_present: bool | None = None,
    ) -> ToolPolicy:
        """
        Update policy attributes. Omitted arguments keep their value.

        Raises:
            NotFoundError: If the policy doesn't exist
        """
        updates: list[str] = []
        params: list[Any] = []
        if name is not None:
            updates.append("name = ?")
            params.append(name)
        if tool_name is not None:
            updates.append("tool_name = ?")
            params.append(tool_name)
        if agent_id is not _UNSET:
            updates.append("agent_id = ?")
            params.append(agent_id)
        if allow_usage_when_untrusted_data_is_present is not None:
            updates.append("allow_untrusted = ?")
            params.append(int(allow_usage_when_untrusted_data_is_present))
        updates.append("updated_at = ?")
        params.append(now_iso())
        params.append(policy_id)

        with self._write("update_policy") as conn:
            cursor = conn.execute(
                f"UPDATE tool_policies SET {', '.join(updates)} WHERE policy_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise NotFoundError(entity="Policy", entity_id=policy_id)
            self._bump_version(conn)

        policy = self.get_policy(policy_id)
        if policy is None:
            raise NotFoundError(entity="Policy", entity_id=policy_id)
        return policy

    def delete_policy(self, policy_id: str) -> bool:
        """
        Delete a policy and, by cascade, all of its rules.

        Returns:
            True if the policy existed
        """
        with self._write("delete_policy") as conn:
            cursor = conn.execute(
                "DELETE FROM tool_policies WHERE policy_id = ?",
                (policy_id,),
            )
            deleted = cursor.rowcount > 0
            if deleted:
                self._bump_version(conn)
        if deleted:
            logger.info("Deleted policy %s", policy_id)
        return deleted

    # =========================================================================
    # Rule Operations
    # =========================================================================

    def create_rule(
        self,
        policy_id: str,
        argument_name: str,
        operator: RuleOperator | str,
        value: Any,
        action: RuleAction | str,
        reason: str | None = None,
    ) -> InvocationRule:
        """
        Append a rule to a policy.

        The operand is validated before it is stored: regular expressions
        must compile and numeric operators need a numeric value.

        Raises:
            RuleValidationError: Unknown operator or action, empty argument
            InvalidRegexError / InvalidOperandError: Bad operand
            RuleLimitExceededError: Policy already holds max_rules_per_policy
            NotFoundError: Policy doesn't exist
        """
        rule = _build_rule(
            tool_policy_id=policy_id,
            argument_name=argument_name,
            operator=operator,
            value=value,
            action=action,
            reason=reason,
        )
        validate_operand(rule.operator, rule.value)
        created_at = rule.created_at.isoformat()

        with self._write("create_rule") as conn:
            exists = conn.execute(
                "SELECT 1 FROM tool_policies WHERE policy_id = ?",
                (policy_id,),
            ).fetchone()
            if exists is None:
                raise NotFoundError(entity="Policy", entity_id=policy_id)

            count, last = conn.execute(
                "SELECT COUNT(*), COALESCE(MAX(position), -1) FROM invocation_rules WHERE tool_policy_id = ?",
                (policy_id,),
            ).fetchone()
            if count >= self.max_rules_per_policy:
                raise RuleLimitExceededError(
                    policy_id=policy_id,
                    max_rules=self.max_rules_per_policy,
                )

            rule = rule.model_copy(update={"position": last + 1})
            conn.execute(
                """
                INSERT INTO invocation_rules (
                    rule_id, tool_policy_id, position, argument_name, operator,
                    value, action, reason, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.tool_policy_id,
                    rule.position,
                    rule.argument_name,
                    rule.operator.value,
                    rule.value,
                    rule.action.value,
                    rule.reason,
                    created_at,
                    created_at,
                ),
            )
            self._bump_version(conn)
        return rule

    def get_rule(self, rule_id: str) -> InvocationRule | None:
        with self._read("get_rule") as conn:
            row = conn.execute(
                "SELECT * FROM invocation_rules WHERE rule_id = ?",
                (rule_id,),
            ).fetchone()
            return self._rule_from_row(row) if row else None

    def list_rules(self, policy_id: str) -> list[InvocationRule]:
        """Rules of one policy in creation order."""
        with self._read("list_rules") as conn:
            return self._rules_for(conn, [policy_id]).get(policy_id, [])

    def update_rule(self, rule_id: str, **changes: Any) -> InvocationRule:
        """
        Update a rule in place, keeping its position.

        Accepted keys: argument_name, operator, value, action, reason.

        Raises:
            NotFoundError: If the rule doesn't exist
            ValueError: On an unknown key
        """
        allowed = {"argument_name", "operator", "value", "action", "reason"}
        unknown = set(changes) - allowed
        if unknown:
            msg = f"Cannot update rule fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        current = self.get_rule(rule_id)
        if current is None:
            raise NotFoundError(entity="Rule", entity_id=rule_id)

        updated = _build_rule(**{**current.model_dump(), **changes})
        validate_operand(updated.operator, updated.value)

        with self._write("update_rule") as conn:
            cursor = conn.execute(
                """
                UPDATE invocation_rules
                SET argument_name = ?, operator = ?, value = ?, action = ?,
                    reason = ?, updated_at = ?
                WHERE rule_id = ?
                """,
                (
                    updated.argument_name,
                    updated.operator.value,
                    updated.value,
                    updated.action.value,
                    updated.reason,
                    now_iso(),
                    rule_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(entity="Rule", entity_id=rule_id)
            self._bump_version(conn)
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        with self._write("delete_rule") as conn:
            cursor = conn.execute(
                "DELETE FROM invocation_rules WHERE rule_id = ?",
                (rule_id,),
            )
            deleted = cursor.rowcount > 0
            if deleted:
                self._bump_version(conn)
        return deleted

    def import_document(self, document: PolicyDocument, replace: bool = False) -> list[ToolPolicy]:
        """
        Create every policy of a policy document with its rules.

        Args:
            document: Parsed policy document
            replace: Delete an existing policy with the same name first

        Returns:
            The created policies, in document order

        Policies are imported one by one; a failing rule leaves the policies
        created before it in place.
        """
        created: list[ToolPolicy] = []
        for spec in document.policies:
            existing = self.get_policy_by_name(spec.name)
            if existing is not None and replace:
                self.delete_policy(existing.id)
            policy = self.create_policy(
                name=spec.name,
                tool_name=spec.tool_name,
                agent_id=spec.agent_id,
                allow_usage_when_untrusted_data_is_present=spec.allow_usage_when_untrusted_data_is_present,
            )
            for rule in spec.rules:
                self.create_rule(
                    policy.id,
                    argument_name=rule.argument_name,
                    operator=rule.operator,
                    value=rule.value,
                    action=rule.action,
                    reason=rule.reason,
                )
            created.append(self.get_policy(policy.id) or policy)
        return created

    def _rules_for(
        self,
        conn: sqlite3.Connection,
        policy_ids: list[str],
    ) -> dict[str, list[InvocationRule]]:
        if not policy_ids:
            return {}
        placeholders = ", ".join("?" for _ in policy_ids)
        rows = conn.execute(
            f"""
            SELECT * FROM invocation_rules
            WHERE tool_policy_id IN ({placeholders})
            ORDER BY tool_policy_id, position
            """,
            policy_ids,
        ).fetchall()
        by_policy: dict[str, list[InvocationRule]] = {}
        for row in rows:
            by_policy.setdefault(row["tool_policy_id"], []).append(self._rule_from_row(row))
        return by_policy

    def _rule_from_row(self, row: sqlite3.Row) -> InvocationRule:
        try:
            return InvocationRule(
                id=row["rule_id"],
                tool_policy_id=row["tool_policy_id"],
                argument_name=row["argument_name"],
                operator=row["operator"],
                value=row["value"],
                action=row["action"],
                reason=row["reason"],
                position=row["position"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        except ValidationError as e:
            # Unknown operator/action in a stored row: refuse to guess
            raise StorageReadError(
                operation="load_rule",
                underlying_error=f"rule {row['rule_id']} is not loadable: {e}",
            ) from e

    def _policy_from_row(
        self,
        row: sqlite3.Row,
        rules: dict[str, list[InvocationRule]],
    ) -> ToolPolicy:
        return ToolPolicy(
            id=row["policy_id"],
            name=row["name"],
            tool_name=row["tool_name"],
            agent_id=row["agent_id"],
            allow_usage_when_untrusted_data_is_present=bool(row["allow_untrusted"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            rules=tuple(rules.get(row["policy_id"], [])),
        )

    # =========================================================================
    # Audit Operations
    # =========================================================================

    def append_record(self, record: InvocationRecord) -> None:
        """Append a new invocation record."""
        if not record.input_hash:
            record.input_hash = compute_hash(record.arguments)
        with self._write("append_record") as conn:
            conn.execute(
                """
                INSERT INTO invocation_records (
                    record_id, tool_name, agent_id, session_id, args_json,
                    state, outcome, verdict_json, reason, output_json, error,
                    input_hash, output_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    record.tool_name,
                    record.agent_id,
                    record.session_id,
                    json.dumps(record.arguments, default=str),
                    record.state.value,
                    record.outcome.value if record.outcome else None,
                    record.verdict.model_dump_json() if record.verdict else None,
                    record.reason,
                    json.dumps(record.output, default=str) if record.output is not None else None,
                    record.error,
                    record.input_hash,
                    record.output_hash,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )

    def update_record_outcome(
        self,
        record_id: str,
        state: InvocationState,
        outcome: InvocationOutcome | None = None,
        verdict: InvocationVerdict | None = None,
        reason: str | None = None,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        """
        Move a record to a new state. Omitted fields keep their value.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        updates = ["state = ?", "updated_at = ?"]
        params: list[Any] = [InvocationState(state).value, now_iso()]

        if outcome is not None:
            updates.append("outcome = ?")
            params.append(InvocationOutcome(outcome).value)
        if verdict is not None:
            updates.append("verdict_json = ?")
            params.append(verdict.model_dump_json())
        if reason is not None:
            updates.append("reason = ?")
            params.append(reason)
        if output is not None:
            updates.append("output_json = ?")
            params.append(json.dumps(output, default=str))
            updates.append("output_hash = ?")
            params.append(compute_hash(output))
        if error is not None:
            updates.append("error = ?")
            params.append(error)
        params.append(record_id)

        with self._write("update_record_outcome") as conn:
            cursor = conn.execute(
                f"UPDATE invocation_records SET {', '.join(updates)} WHERE record_id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise NotFoundError(entity="Invocation record", entity_id=record_id)

    def report_defective_rule(self, record_id: str, defect: DefectiveRule) -> None:
        with self._write("report_defective_rule") as conn:
            conn.execute(
                """
                INSERT INTO defective_rule_reports (
                    record_id, rule_id, tool_policy_id, error, error_code, reported_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    defect.rule_id,
                    defect.tool_policy_id,
                    defect.error,
                    defect.error_code,
                    now_iso(),
                ),
            )

    def get_record(self, record_id: str) -> InvocationRecord | None:
        with self._read("get_record") as conn:
            row = conn.execute(
                "SELECT * FROM invocation_records WHERE record_id = ?",
                (record_id,),
            ).fetchone()
            return self._record_from_row(row) if row else None

    def list_records(
        self,
        limit: int = 100,
        tool_name: str | None = None,
        state: InvocationState | None = None,
    ) -> list[InvocationRecord]:
        """List invocation records, most recent first."""
        conditions: list[str] = []
        params: list[Any] = []
        if tool_name is not None:
            conditions.append("tool_name = ?")
            params.append(tool_name)
        if state is not None:
            conditions.append("state = ?")
            params.append(InvocationState(state).value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        with self._read("list_records") as conn:
            rows = conn.execute(
                f"SELECT * FROM invocation_records {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
            return [self._record_from_row(r) for r in rows]

    def get_defective_rule_reports(self, record_id: str) -> list[DefectiveRule]:
        with self._read("get_defective_rule_reports") as conn:
            rows = conn.execute(
                "SELECT * FROM defective_rule_reports WHERE record_id = ? ORDER BY report_id",
                (record_id,),
            ).fetchall()
            return [
                DefectiveRule(
                    rule_id=r["rule_id"],
                    tool_policy_id=r["tool_policy_id"],
                    error=r["error"],
                    error_code=r["error_code"],
                )
                for r in rows
            ]

    def _record_from_row(self, row: sqlite3.Row) -> InvocationRecord:
        return InvocationRecord(
            record_id=row["record_id"],
            tool_name=row["tool_name"],
            arguments=json.loads(row["args_json"]),
            agent_id=row["agent_id"],
            session_id=row["session_id"],
            state=InvocationState(row["state"]),
            outcome=InvocationOutcome(row["outcome"]) if row["outcome"] else None,
            verdict=(
                InvocationVerdict.model_validate_json(row["verdict_json"])
                if row["verdict_json"]
                else None
            ),
            reason=row["reason"],
            output=json.loads(row["output_json"]) if row["output_json"] else None,
            error=row["error"],
            input_hash=row["input_hash"],
            output_hash=row["output_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


def _build_rule(**fields: Any) -> InvocationRule:
    """Build a rule, reporting schema violations as RuleValidationError."""
    try:
        return InvocationRule(**fields)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first["loc"]) or "rule"
        raise RuleValidationError(
            field_name=field_name,
            operator=str(fields.get("operator", "")),
            rule_value=str(fields.get("value", "")),
            message=f"Invalid rule field {field_name}: {first['msg']}",
        ) from e
