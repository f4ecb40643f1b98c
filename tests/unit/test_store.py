"""
Unit tests for SQLite storage.

Tests cover:
- Database initialization
- Policy and rule CRUD, ordering and cascade delete
- Applicable-policy lookup by tool pattern and agent
- Version counter
- Creation-time rule validation and limits
- Invocation records and defective-rule reports
- Hash computation
"""

from pathlib import Path

import pytest

from toolgate.errors import (
    InvalidOperandError,
    InvalidRegexError,
    NotFoundError,
    RuleLimitExceededError,
    RuleValidationError,
    StorageConnectionError,
    StorageWriteError,
)
from toolgate.schema import (
    DefectiveRule,
    InvocationOutcome,
    InvocationRecord,
    InvocationState,
    InvocationVerdict,
    RuleAction,
    RuleOperator,
    load_policy_document_from_string,
)
from toolgate.store import GateDB, compute_hash


# =============================================================================
# Utility Function Tests
# =============================================================================


class TestComputeHash:
    """Tests for hashing."""

    def test_string(self) -> None:
        assert compute_hash("hello") == compute_hash("hello")
        assert len(compute_hash("hello")) == 64

    def test_dict_key_order_irrelevant(self) -> None:
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})

    def test_none(self) -> None:
        assert compute_hash(None) == ""


# =============================================================================
# Database Tests
# =============================================================================


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_creates_file(self, temp_dir: Path) -> None:
        path = temp_dir / "new.db"
        with GateDB(path):
            pass
        assert path.exists()

    def test_in_memory(self) -> None:
        with GateDB(":memory:") as db:
            assert db.list_policies() == []
            assert db.version == 0

    def test_reopen_keeps_data(self, temp_dir: Path) -> None:
        path = temp_dir / "persist.db"
        with GateDB(path) as db:
            db.create_policy("p", tool_name="fs.read")
        with GateDB(path) as db:
            assert [p.name for p in db.list_policies()] == ["p"]

    def test_unreachable_path(self, temp_dir: Path) -> None:
        with pytest.raises(StorageConnectionError):
            GateDB(temp_dir / "missing" / "dir" / "x.db")

    def test_closed_connection(self, temp_dir: Path) -> None:
        db = GateDB(temp_dir / "closed.db")
        db.close()
        with pytest.raises(StorageConnectionError):
            db.list_policies()


class TestPolicies:
    """Tests for policy CRUD."""

    def test_create_and_get(self, db: GateDB) -> None:
        created = db.create_policy("protect-etc", tool_name="fs.read", agent_id="agent-1")
        loaded = db.get_policy(created.id)

        assert loaded is not None
        assert loaded.name == "protect-etc"
        assert loaded.tool_name == "fs.read"
        assert loaded.agent_id == "agent-1"
        assert loaded.rules == ()

    def test_get_by_name(self, db: GateDB) -> None:
        created = db.create_policy("named", tool_name="fs.read")
        assert db.get_policy_by_name("named").id == created.id
        assert db.get_policy_by_name("other") is None

    def test_get_missing(self, db: GateDB) -> None:
        assert db.get_policy("nope") is None

    def test_duplicate_name_rejected(self, db: GateDB) -> None:
        db.create_policy("dup", tool_name="fs.read")
        with pytest.raises(StorageWriteError):
            db.create_policy("dup", tool_name="fs.write")

    def test_list_in_creation_order(self, db: GateDB) -> None:
        for name in ("c", "a", "b"):
            db.create_policy(name, tool_name="fs.read")
        assert [p.name for p in db.list_policies()] == ["c", "a", "b"]

    def test_list_filtered_by_tool(self, db: GateDB) -> None:
        db.create_policy("read", tool_name="fs.read")
        db.create_policy("write", tool_name="fs.write")
        assert [p.name for p in db.list_policies(tool_name="fs.write")] == ["write"]

    def test_update(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read", agent_id="agent-1")
        updated = db.update_policy(
            policy.id,
            tool_name="fs.*",
            agent_id=None,
            allow_usage_when_untrusted_data_is_present=True,
        )

        assert updated.tool_name == "fs.*"
        assert updated.agent_id is None
        assert updated.allow_usage_when_untrusted_data_is_present is True
        assert updated.name == "p"

    def test_update_missing(self, db: GateDB) -> None:
        with pytest.raises(NotFoundError):
            db.update_policy("nope", name="x")

    def test_delete_cascades_to_rules(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        rule = db.create_rule(policy.id, "path", "exists", "", "deny")

        assert db.delete_policy(policy.id) is True
        assert db.get_policy(policy.id) is None
        assert db.get_rule(rule.id) is None
        assert db.list_rules(policy.id) == []

    def test_delete_missing(self, db: GateDB) -> None:
        assert db.delete_policy("nope") is False


class TestRules:
    """Tests for rule CRUD."""

    def test_rules_in_creation_order(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        ids = [
            db.create_rule(policy.id, f"arg{i}", "exists", "", "allow").id
            for i in range(5)
        ]

        rules = db.list_rules(policy.id)
        assert [r.id for r in rules] == ids
        assert [r.position for r in rules] == [0, 1, 2, 3, 4]
        assert [r.id for r in db.get_policy(policy.id).rules] == ids

    def test_position_after_delete(self, db: GateDB) -> None:
        """New rules always go after existing ones."""
        policy = db.create_policy("p", tool_name="fs.read")
        first = db.create_rule(policy.id, "a", "exists", "", "allow")
        second = db.create_rule(policy.id, "b", "exists", "", "allow")
        db.delete_rule(first.id)
        third = db.create_rule(policy.id, "c", "exists", "", "allow")

        assert [r.id for r in db.list_rules(policy.id)] == [second.id, third.id]

    def test_rule_fields_round_trip(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        rule = db.create_rule(
            policy.id,
            argument_name="size",
            operator=RuleOperator.GREATER_THAN,
            value=100,
            action=RuleAction.REQUIRE_CONFIRMATION,
            reason="large",
        )
        loaded = db.get_rule(rule.id)

        assert loaded.operator == RuleOperator.GREATER_THAN
        assert loaded.value == "100"
        assert loaded.action == RuleAction.REQUIRE_CONFIRMATION
        assert loaded.reason == "large"
        assert loaded.tool_policy_id == policy.id

    def test_create_for_missing_policy(self, db: GateDB) -> None:
        with pytest.raises(NotFoundError):
            db.create_rule("nope", "path", "exists", "", "deny")

    def test_unknown_operator_rejected(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        with pytest.raises(RuleValidationError) as exc_info:
            db.create_rule(policy.id, "path", "resembles", "x", "deny")
        assert exc_info.value.field_name == "operator"

    def test_invalid_regex_rejected(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        with pytest.raises(InvalidRegexError):
            db.create_rule(policy.id, "path", "matches_regex", "([", "deny")
        assert db.list_rules(policy.id) == []

    def test_non_numeric_operand_rejected(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        with pytest.raises(InvalidOperandError):
            db.create_rule(policy.id, "size", "greater_than", "big", "deny")

    def test_rule_limit(self, temp_dir: Path) -> None:
        with GateDB(temp_dir / "limited.db", max_rules_per_policy=2) as db:
            policy = db.create_policy("p", tool_name="fs.read")
            db.create_rule(policy.id, "a", "exists", "", "allow")
            db.create_rule(policy.id, "b", "exists", "", "allow")

            with pytest.raises(RuleLimitExceededError):
                db.create_rule(policy.id, "c", "exists", "", "allow")
            assert len(db.list_rules(policy.id)) == 2

    def test_update_keeps_position(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        db.create_rule(policy.id, "a", "exists", "", "allow")
        rule = db.create_rule(policy.id, "b", "equals", "x", "allow")

        updated = db.update_rule(rule.id, value="y", action="deny", reason="changed")
        loaded = db.get_rule(rule.id)

        assert updated.position == 1
        assert loaded.value == "y"
        assert loaded.action == RuleAction.DENY
        assert loaded.reason == "changed"

    def test_update_validates_operand(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        rule = db.create_rule(policy.id, "path", "equals", "x", "deny")

        with pytest.raises(InvalidRegexError):
            db.update_rule(rule.id, operator="matches_regex", value="(")
        assert db.get_rule(rule.id).operator == RuleOperator.EQUALS

    def test_update_unknown_field(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        rule = db.create_rule(policy.id, "path", "equals", "x", "deny")
        with pytest.raises(ValueError):
            db.update_rule(rule.id, position=7)

    def test_update_missing(self, db: GateDB) -> None:
        with pytest.raises(NotFoundError):
            db.update_rule("nope", value="x")

    def test_delete(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        rule = db.create_rule(policy.id, "path", "exists", "", "deny")
        assert db.delete_rule(rule.id) is True
        assert db.delete_rule(rule.id) is False


class TestPoliciesFor:
    """Tests for applicable-policy lookup."""

    def test_exact_and_glob_tool_names(self, db: GateDB) -> None:
        db.create_policy("exact", tool_name="fs.read")
        db.create_policy("glob", tool_name="fs.*")
        db.create_policy("other", tool_name="http.get")

        assert [p.name for p in db.policies_for("fs.read")] == ["exact", "glob"]
        assert [p.name for p in db.policies_for("fs.write")] == ["glob"]
        assert db.policies_for("shell.run") == []

    def test_agent_scoping(self, db: GateDB) -> None:
        db.create_policy("global", tool_name="fs.read")
        db.create_policy("mine", tool_name="fs.read", agent_id="agent-1")
        db.create_policy("theirs", tool_name="fs.read", agent_id="agent-2")

        assert [p.name for p in db.policies_for("fs.read", "agent-1")] == ["global", "mine"]
        assert [p.name for p in db.policies_for("fs.read")] == ["global"]

    def test_rules_attached(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        db.create_rule(policy.id, "path", "starts_with", "/etc", "deny")

        (loaded,) = db.policies_for("fs.read")
        assert len(loaded.rules) == 1
        assert loaded.rules[0].value == "/etc"


class TestVersion:
    """Tests for the configuration version counter."""

    def test_bumped_by_every_write(self, db: GateDB) -> None:
        versions = [db.version]
        policy = db.create_policy("p", tool_name="fs.read")
        versions.append(db.version)
        rule = db.create_rule(policy.id, "path", "exists", "", "deny")
        versions.append(db.version)
        db.update_rule(rule.id, action="allow")
        versions.append(db.version)
        db.update_policy(policy.id, name="q")
        versions.append(db.version)
        db.delete_rule(rule.id)
        versions.append(db.version)
        db.delete_policy(policy.id)
        versions.append(db.version)

        assert versions == sorted(set(versions))

    def test_not_bumped_by_reads_or_records(self, db: GateDB) -> None:
        db.create_policy("p", tool_name="fs.read")
        before = db.version

        db.list_policies()
        db.policies_for("fs.read")
        db.append_record(InvocationRecord(tool_name="fs.read"))

        assert db.version == before

    def test_failed_write_does_not_bump(self, db: GateDB) -> None:
        policy = db.create_policy("p", tool_name="fs.read")
        before = db.version
        with pytest.raises(InvalidRegexError):
            db.create_rule(policy.id, "path", "matches_regex", "(", "deny")
        assert db.version == before

    def test_shared_between_connections(self, temp_dir: Path) -> None:
        """Another process editing the same file is visible through version."""
        path = temp_dir / "shared.db"
        with GateDB(path) as reader, GateDB(path) as writer:
            before = reader.version
            writer.create_policy("p", tool_name="fs.read")
            assert reader.version > before


class TestImportDocument:
    """Tests for bulk import."""

    def test_import(self, db: GateDB, sample_policy_yaml: str) -> None:
        created = db.import_document(load_policy_document_from_string(sample_policy_yaml))

        assert [p.name for p in created] == ["protect-etc", "confirm-large-writes"]
        assert len(created[0].rules) == 1
        assert created[1].agent_id == "agent-1"
        assert [p.name for p in db.policies_for("fs.write", "agent-1")] == ["confirm-large-writes"]

    def test_replace(self, db: GateDB, sample_policy_yaml: str) -> None:
        document = load_policy_document_from_string(sample_policy_yaml)
        db.import_document(document)
        db.import_document(document, replace=True)

        assert len(db.list_policies()) == 2

    def test_duplicate_without_replace(self, db: GateDB, sample_policy_yaml: str) -> None:
        document = load_policy_document_from_string(sample_policy_yaml)
        db.import_document(document)
        with pytest.raises(StorageWriteError):
            db.import_document(document)


class TestRecords:
    """Tests for the audit history."""

    def test_append_and_get(self, db: GateDB) -> None:
        record = InvocationRecord(tool_name="fs.read", arguments={"path": "/a"}, agent_id="agent-1")
        db.append_record(record)

        loaded = db.get_record(record.record_id)
        assert loaded.tool_name == "fs.read"
        assert loaded.arguments == {"path": "/a"}
        assert loaded.state == InvocationState.RECEIVED
        assert loaded.input_hash == compute_hash({"path": "/a"})

    def test_update_outcome(self, db: GateDB) -> None:
        record = InvocationRecord(tool_name="fs.read")
        db.append_record(record)
        verdict = InvocationVerdict(action=RuleAction.ALLOW, reason="ok")

        db.update_record_outcome(record.record_id, InvocationState.ALLOWED, verdict=verdict, reason="ok")
        db.update_record_outcome(
            record.record_id,
            InvocationState.COMPLETED,
            outcome=InvocationOutcome.EXECUTED_SUCCESS,
            output={"content": "hi"},
        )

        loaded = db.get_record(record.record_id)
        assert loaded.state == InvocationState.COMPLETED
        assert loaded.outcome == InvocationOutcome.EXECUTED_SUCCESS
        assert loaded.verdict == verdict
        assert loaded.reason == "ok"
        assert loaded.output == {"content": "hi"}
        assert loaded.output_hash == compute_hash({"content": "hi"})

    def test_update_missing(self, db: GateDB) -> None:
        with pytest.raises(NotFoundError):
            db.update_record_outcome("nope", InvocationState.DENIED)

    def test_list_most_recent_first(self, db: GateDB) -> None:
        ids = []
        for tool in ("a", "b", "c"):
            record = InvocationRecord(tool_name=tool)
            db.append_record(record)
            ids.append(record.record_id)

        assert [r.record_id for r in db.list_records()] == list(reversed(ids))
        assert len(db.list_records(limit=2)) == 2
        assert [r.tool_name for r in db.list_records(tool_name="b")] == ["b"]

    def test_list_by_state(self, db: GateDB) -> None:
        denied = InvocationRecord(tool_name="t")
        db.append_record(denied)
        db.append_record(InvocationRecord(tool_name="t"))
        db.update_record_outcome(denied.record_id, InvocationState.DENIED)

        assert [r.record_id for r in db.list_records(state=InvocationState.DENIED)] == [denied.record_id]

    def test_defective_rule_reports(self, db: GateDB) -> None:
        record = InvocationRecord(tool_name="t")
        db.append_record(record)
        defect = DefectiveRule(rule_id="r1", tool_policy_id="p1", error="bad regex", error_code=1002)

        db.report_defective_rule(record.record_id, defect)

        assert db.get_defective_rule_reports(record.record_id) == [defect]
