"""
CLI entry point for Toolgate.

Operator tooling around the rule store and the audit history.

Commands:
    policy      Create, list, show, delete and import tool policies
    rule        Add, list and delete invocation rules
    evaluate    Dry-run the resolver against a tool call
    history     List recorded invocation attempts
    show        Show one invocation record

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to
    the store and the resolver. Mediation itself is a library call
    (InvocationMediator.mediate) made by whatever hosts the agent.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from toolgate import __version__
from toolgate.config import GateConfig, load_config
from toolgate.errors import NotFoundError, ToolgateError
from toolgate.log import setup_logging
from toolgate.policy import PolicyResolver
from toolgate.schema import (
    InvocationState,
    RuleAction,
    RuleOperator,
    ToolPolicy,
    load_policy_document,
)
from toolgate.store import GateDB

# Initialize Typer app with metadata
app = typer.Typer(
    name="toolgate",
    help="Enforce per-argument policies on agent tool invocations.",
    add_completion=False,
    no_args_is_help=True,
)
policy_app = typer.Typer(help="Manage tool policies.", no_args_is_help=True)
rule_app = typer.Typer(help="Manage invocation rules.", no_args_is_help=True)
app.add_typer(policy_app, name="policy")
app.add_typer(rule_app, name="rule")

# Rich console for formatted output
console = Console()

# Exit codes of `toolgate evaluate`
EXIT_ALLOW = 0
EXIT_DENY = 1
EXIT_CONFIRM = 2

_ACTION_STYLE = {
    RuleAction.ALLOW: "green",
    RuleAction.REQUIRE_CONFIRMATION: "yellow",
    RuleAction.DENY: "red",
}

_STATE_STYLE = {
    InvocationState.COMPLETED: "green",
    InvocationState.FAILED: "red",
    InvocationState.DENIED: "red",
    InvocationState.PENDING_CONFIRMATION: "yellow",
}


@dataclass
class _State:
    config: GateConfig = field(default_factory=GateConfig)
    db_path: Path = Path("toolgate.db")

    def open_db(self) -> GateDB:
        return GateDB(self.db_path, max_rules_per_policy=self.config.max_rules_per_policy)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]toolgate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to a Toolgate YAML configuration file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            help="Path to the SQLite database. Overrides db_path from the config.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable debug logging.",
        ),
    ] = False,
) -> None:
    """
    Toolgate - Policy enforcement for AI agent tool invocations.

    Manage the policies that decide whether each tool call an agent makes
    is allowed, denied, or held for human confirmation, and inspect the
    audit history of past attempts.
    """
    try:
        config = load_config(config_path) if config_path else GateConfig()
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(code=1)

    setup_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = _State(config=config, db_path=db or Path(config.db_path))


def _state(ctx: typer.Context) -> _State:
    if not isinstance(ctx.obj, _State):
        ctx.obj = _State()
    return ctx.obj


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _find_policy(db: GateDB, ref: str) -> ToolPolicy:
    """Look up a policy by id, then by name."""
    policy = db.get_policy(ref) or db.get_policy_by_name(ref)
    if policy is None:
        raise NotFoundError(entity="Policy", entity_id=ref)
    return policy


def _parse_arg(raw: str) -> tuple[str, Any]:
    """Parse key=value; values that are valid JSON keep their type."""
    key, sep, value = raw.partition("=")
    if not sep or not key:
        msg = f"Expected key=value, got '{raw}'"
        raise typer.BadParameter(msg)
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


# =============================================================================
# Policy commands
# =============================================================================


@policy_app.command("create")
def policy_create(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Unique policy name.")],
    tool: Annotated[
        str,
        typer.Option("--tool", "-t", help="Tool name or glob pattern (e.g. 'fs.*')."),
    ],
    agent: Annotated[
        Optional[str],
        typer.Option("--agent", "-a", help="Restrict the policy to one agent."),
    ] = None,
    allow_untrusted: Annotated[
        bool,
        typer.Option(
            "--allow-untrusted",
            help="Allow the tool while the agent's context holds untrusted data.",
        ),
    ] = False,
) -> None:
    """
    Create an empty tool policy.

    Example:
        $ toolgate policy create protect-etc --tool fs.read
    """
    try:
        with _state(ctx).open_db() as db:
            policy = db.create_policy(
                name=name,
                tool_name=tool,
                agent_id=agent,
                allow_usage_when_untrusted_data_is_present=allow_untrusted,
            )
    except (ToolgateError, ValidationError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Created policy [bold]{policy.name}[/bold] ({policy.id})")


@policy_app.command("list")
def policy_list(
    ctx: typer.Context,
    tool: Annotated[
        Optional[str],
        typer.Option("--tool", "-t", help="Only policies declared for this tool."),
    ] = None,
) -> None:
    """List tool policies in creation order."""
    try:
        with _state(ctx).open_db() as db:
            policies = db.list_policies(tool_name=tool)
    except ToolgateError as e:
        _fail(str(e))

    if not policies:
        console.print("[dim]No policies found.[/dim]")
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Policy ID", style="cyan")
    table.add_column("Name")
    table.add_column("Tool")
    table.add_column("Agent")
    table.add_column("Untrusted", width=9)
    table.add_column("Rules", justify="right")

    for p in policies:
        table.add_row(
            p.id,
            p.name,
            p.tool_name,
            p.agent_id or "[dim]all[/dim]",
            "allow" if p.allow_usage_when_untrusted_data_is_present else "block",
            str(len(p.rules)),
        )

    console.print(table)


@policy_app.command("show")
def policy_show(
    ctx: typer.Context,
    policy_ref: Annotated[str, typer.Argument(help="Policy ID or name.")],
) -> None:
    """Show a policy and its rules."""
    try:
        with _state(ctx).open_db() as db:
            policy = _find_policy(db, policy_ref)
    except ToolgateError as e:
        _fail(str(e))

    console.print(f"[bold]Policy {policy.name}[/bold] ({policy.id})")
    console.print(f"  Tool: {policy.tool_name}")
    console.print(f"  Agent: {policy.agent_id or 'all'}")
    untrusted = "allowed" if policy.allow_usage_when_untrusted_data_is_present else "blocked"
    console.print(f"  Untrusted context: {untrusted}")
    console.print(f"  Created: {policy.created_at.isoformat()[:19]}")
    console.print()
    _print_rules(policy)


@policy_app.command("delete")
def policy_delete(
    ctx: typer.Context,
    policy_ref: Annotated[str, typer.Argument(help="Policy ID or name.")],
) -> None:
    """Delete a policy and all of its rules."""
    try:
        with _state(ctx).open_db() as db:
            policy = _find_policy(db, policy_ref)
            db.delete_policy(policy.id)
    except ToolgateError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Deleted policy [bold]{policy.name}[/bold] and {len(policy.rules)} rule(s)")


@policy_app.command("import")
def policy_import(
    ctx: typer.Context,
    path: Annotated[
        Path,
        typer.Argument(
            help="Path to a policy document (YAML).",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    replace: Annotated[
        bool,
        typer.Option("--replace", help="Replace existing policies with the same name."),
    ] = False,
) -> None:
    """
    Import policies from a YAML policy document.

    Example:
        $ toolgate policy import policies.yaml --replace
    """
    try:
        document = load_policy_document(path)
    except (ValidationError, ValueError) as e:
        _fail(f"Error loading policy document: {e}")

    try:
        with _state(ctx).open_db() as db:
            created = db.import_document(document, replace=replace)
    except (ToolgateError, ValidationError) as e:
        _fail(str(e))

    rules = sum(len(p.rules) for p in created)
    console.print(f"[green]✓[/green] Imported {len(created)} policy(ies) with {rules} rule(s)")


# =============================================================================
# Rule commands
# =============================================================================


@rule_app.command("add")
def rule_add(
    ctx: typer.Context,
    policy_ref: Annotated[str, typer.Argument(help="Policy ID or name.")],
    argument: Annotated[
        str,
        typer.Option("--arg", help="Argument the rule inspects (dotted paths allowed)."),
    ],
    operator: Annotated[
        RuleOperator,
        typer.Option("--op", help="Comparison operator."),
    ],
    action: Annotated[
        RuleAction,
        typer.Option("--action", help="Action when the rule matches."),
    ],
    value: Annotated[
        str,
        typer.Option("--value", help="Comparison operand."),
    ] = "",
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", help="Explanation shown when the rule fires."),
    ] = None,
) -> None:
    """
    Append a rule to a policy.

    Example:
        $ toolgate rule add protect-etc --arg path --op matches_regex \\
            --value '^/etc/' --action deny --reason 'restricted path'
    """
    try:
        with _state(ctx).open_db() as db:
            policy = _find_policy(db, policy_ref)
            rule = db.create_rule(
                policy.id,
                argument_name=argument,
                operator=operator,
                value=value,
                action=action,
                reason=reason,
            )
    except (ToolgateError, ValidationError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Added rule {rule.id} to [bold]{policy.name}[/bold]")


@rule_app.command("list")
def rule_list(
    ctx: typer.Context,
    policy_ref: Annotated[str, typer.Argument(help="Policy ID or name.")],
) -> None:
    """List the rules of a policy in evaluation order."""
    try:
        with _state(ctx).open_db() as db:
            policy = _find_policy(db, policy_ref)
    except ToolgateError as e:
        _fail(str(e))
    _print_rules(policy)


@rule_app.command("delete")
def rule_delete(
    ctx: typer.Context,
    rule_id: Annotated[str, typer.Argument(help="Rule ID.")],
) -> None:
    """Delete one rule."""
    try:
        with _state(ctx).open_db() as db:
            deleted = db.delete_rule(rule_id)
    except ToolgateError as e:
        _fail(str(e))
    if not deleted:
        _fail(f"Rule not found: {rule_id}")
    console.print(f"[green]✓[/green] Deleted rule {rule_id}")


def _print_rules(policy: ToolPolicy) -> None:
    if not policy.rules:
        console.print("[dim]No rules.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=3)
    table.add_column("Rule ID", style="cyan")
    table.add_column("Argument")
    table.add_column("Operator")
    table.add_column("Value")
    table.add_column("Action")
    table.add_column("Reason")

    for rule in policy.rules:
        style = _ACTION_STYLE[rule.action]
        table.add_row(
            str(rule.position),
            rule.id,
            rule.argument_name,
            rule.operator.value,
            rule.value,
            f"[{style}]{rule.action.value}[/{style}]",
            rule.reason or "",
        )

    console.print(table)


# =============================================================================
# Evaluation and history
# =============================================================================


@app.command()
def evaluate(
    ctx: typer.Context,
    tool: Annotated[str, typer.Argument(help="Tool name to evaluate.")],
    args: Annotated[
        Optional[list[str]],
        typer.Option("--arg", help="Tool argument as key=value. Repeatable."),
    ] = None,
    agent: Annotated[
        Optional[str],
        typer.Option("--agent", "-a", help="Calling agent ID."),
    ] = None,
    untrusted: Annotated[
        bool,
        typer.Option("--untrusted", help="Treat the agent's context as untrusted."),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the verdict as JSON."),
    ] = False,
) -> None:
    """
    Dry-run the resolver for one tool call without executing or recording it.

    Exit code: 0 allow, 1 deny, 2 require confirmation.

    Example:
        $ toolgate evaluate fs.read --arg path=/etc/passwd
    """
    state = _state(ctx)
    arguments = dict(_parse_arg(raw) for raw in args or [])

    try:
        with state.open_db() as db:
            policies = db.policies_for(tool, agent)
    except ToolgateError as e:
        _fail(str(e))

    resolver = PolicyResolver(state.config.default_verdict_for_unconfigured_tools)
    verdict = resolver.resolve(tool, arguments, policies, context_is_trusted=not untrusted)

    if json_output:
        console.print_json(verdict.model_dump_json())
    else:
        style = _ACTION_STYLE[verdict.action]
        console.print(f"[{style}]{verdict.action.value}[/{style}]: {verdict.reason}")
        if verdict.rule_id:
            console.print(f"[dim]  Rule: {verdict.rule_id} (policy {verdict.policy_id})[/dim]")
        for defect in verdict.defective_rules:
            console.print(f"[yellow]  Skipped defective rule {defect.rule_id}: {defect.error}[/yellow]")

    if verdict.action == RuleAction.DENY:
        raise typer.Exit(code=EXIT_DENY)
    if verdict.action == RuleAction.REQUIRE_CONFIRMATION:
        raise typer.Exit(code=EXIT_CONFIRM)
    raise typer.Exit(code=EXIT_ALLOW)


@app.command()
def history(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of records to show."),
    ] = 20,
    tool: Annotated[
        Optional[str],
        typer.Option("--tool", "-t", help="Only records for this tool."),
    ] = None,
) -> None:
    """List recorded invocation attempts, most recent first."""
    try:
        with _state(ctx).open_db() as db:
            records = db.list_records(limit=limit, tool_name=tool)
    except ToolgateError as e:
        _fail(str(e))

    if not records:
        console.print("[dim]No invocations recorded.[/dim]")
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Record ID", style="cyan")
    table.add_column("Created")
    table.add_column("Tool")
    table.add_column("Agent")
    table.add_column("State", width=20)
    table.add_column("Reason")

    for r in records:
        style = _STATE_STYLE.get(r.state, "white")
        table.add_row(
            r.record_id,
            r.created_at.isoformat()[:19],
            r.tool_name,
            r.agent_id or "",
            f"[{style}]{r.state.value}[/{style}]",
            r.reason or "",
        )

    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="The invocation record ID.")],
) -> None:
    """Show one invocation record with its verdict and outcome."""
    try:
        with _state(ctx).open_db() as db:
            record = db.get_record(record_id)
            if record is None:
                raise NotFoundError(entity="Invocation record", entity_id=record_id)
            defects = db.get_defective_rule_reports(record_id)
    except ToolgateError as e:
        _fail(str(e))

    style = _STATE_STYLE.get(record.state, "white")
    console.print(f"[bold]Invocation {record.record_id}[/bold]")
    console.print(f"  Tool: {record.tool_name}")
    console.print(f"  Agent: {record.agent_id or '-'}")
    console.print(f"  State: [{style}]{record.state.value}[/{style}]")
    if record.outcome:
        console.print(f"  Outcome: {record.outcome.value}")
    if record.reason:
        console.print(f"  Reason: {record.reason}")
    if record.verdict and record.verdict.rule_id:
        console.print(f"  Rule: {record.verdict.rule_id}")
    console.print(f"  Created: {record.created_at.isoformat()[:19]}")
    console.print(f"  Input hash: {record.input_hash[:16]}")
    console.print()
    console.print("[bold]Arguments[/bold]")
    console.print_json(json.dumps(record.arguments, default=str))
    if record.output is not None:
        console.print("[bold]Output[/bold]")
        console.print_json(json.dumps(record.output, default=str))
    if record.error:
        console.print(f"[red]Error: {record.error}[/red]")
    for defect in defects:
        console.print(f"[yellow]Skipped defective rule {defect.rule_id}: {defect.error}[/yellow]")


if __name__ == "__main__":
    app()
