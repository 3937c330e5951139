"""
CLI entry point for txgate.

Commands:
    submit      Run a call through approval and execution
    resume      Finish a submitted request whose receipt never arrived
    evaluate    Dry-run the configured firewall against a call
    policies    Show the active policies of a consumer
    history     List recorded submissions
    show        Show one submission and its transitions
    doctor      Check configuration, endpoint and network

The CLI is thin: it loads configuration, wires a Gateway through
txgate.config and renders results.
"""

import json
import sys
import traceback
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from txgate import __version__
from txgate.config import build_endpoint, build_gateway, build_network, build_registry, policy_names
from txgate.endpoint import LocalDecisionEndpoint
from txgate.errors import ExecutionRevert, TxGateError
from txgate.gateway import SubmissionResult
from txgate.logs import setup_logging
from txgate.schema import (
    ApprovalResult,
    GatewayConfig,
    ReceiptStatus,
    RequestState,
    TransactionRequest,
    load_config,
)
from txgate.store import SubmissionStore

app = typer.Typer(
    name="txgate",
    help="Gate transactions behind firewall policies before they reach the network.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

DEFAULT_DB = Path("txgate.db")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to the gateway YAML file.",
        envvar="TXGATE_CONFIG",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
DbOption = Annotated[
    Optional[Path],
    typer.Option(
        "--db",
        help="Path to the SQLite audit database. Defaults to txgate.db.",
        envvar="TXGATE_DB",
        resolve_path=True,
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output results in JSON format.",
    ),
]
DebugOption = Annotated[
    bool,
    typer.Option(
        "--debug",
        help="Show full error tracebacks.",
    ),
]
SenderOption = Annotated[str, typer.Option("--from", help="Sender address.")]
TargetOption = Annotated[str, typer.Option("--to", help="Target (consumer) address.")]
DataOption = Annotated[str, typer.Option("--data", help="Hex calldata.")]
ValueOption = Annotated[str, typer.Option("--value", help="Value in wei (decimal or 0x-hex).")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]txgate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            help="Log level for diagnostics on stderr.",
            envvar="TXGATE_LOG_LEVEL",
        ),
    ] = "WARNING",
) -> None:
    """
    txgate - policy-gated transaction submission.

    Every call is approved by a decision endpoint before it is broadcast.
    Rejected calls never reach the network.
    """
    setup_logging(log_level)


def _load(config_path: Path | None) -> GatewayConfig:
    return load_config(config_path) if config_path else GatewayConfig()


def _fail(error_type: str, error: Exception, json_output: bool, debug: bool) -> NoReturn:
    """Report an error and exit 1."""
    if json_output:
        output = {"error": True, "error_type": error_type, "message": str(error)}
        if isinstance(error, TxGateError):
            output["details"] = error.to_dict()
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


@app.command()
def submit(
    sender: SenderOption,
    to: TargetOption,
    data: DataOption = "0x",
    value: ValueOption = "0",
    config_path: ConfigOption = None,
    endpoint: Annotated[
        Optional[str],
        typer.Option(
            "--endpoint",
            "-e",
            help="Configured endpoint name. Defaults to default_endpoint.",
            envvar="TXGATE_ENDPOINT",
        ),
    ] = None,
    request_id: Annotated[
        Optional[str],
        typer.Option("--request-id", help="Idempotency key. Generated when omitted."),
    ] = None,
    db: DbOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Run a call through approval and, if approved, execution.

    Exits 0 when the transaction is confirmed (or reverts as expected) and
    1 when it is rejected or fails.

    Example:
        $ txgate submit --from 0xabc... --to 0xdef... --data 0x095ea7b3... -c txgate.yaml
    """
    try:
        config = _load(config_path)
        fields = {"from": sender, "to": to, "data": data, "value": value}
        if request_id:
            fields["request_id"] = request_id
        request = TransactionRequest.model_validate(fields)
    except Exception as e:
        _fail("invalid_input", e, json_output, debug)

    try:
        with SubmissionStore(db or DEFAULT_DB) as store:
            with build_gateway(config, endpoint_name=endpoint, store=store) as gateway:
                result = gateway.submit(request)
    except Exception as e:
        _fail("submission_error", e, json_output, debug)

    if json_output:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _display_submission(result)

    raise typer.Exit(code=0 if result.ok else 1)


def _display_submission(result: SubmissionResult) -> None:
    state = result.state.value
    if result.ok:
        console.print(f"[green]✓[/green] Request [bold]{result.request_id}[/bold]: [green]{state}[/green]")
    else:
        console.print(f"[red]✗[/red] Request [bold]{result.request_id}[/bold]: [red]{state}[/red]")

    if result.approval is not None:
        console.print(f"  Endpoint: {escape(result.approval.endpoint or '-')}")
        if not result.approval.approved:
            console.print(f"  Reason: [yellow]{escape(result.approval.reason or '')}[/yellow]")
    if result.receipt is not None:
        console.print(f"  Tx: [cyan]{result.receipt.tx_hash}[/cyan] (block {result.receipt.block_number})")
        if result.receipt.revert_reason:
            label = "expected revert" if result.receipt.expected_revert else "revert"
            console.print(f"  {label.capitalize()}: {escape(result.receipt.revert_reason)}")
    if result.error is not None and result.approval is None:
        console.print(f"  Error: [red]{escape(result.error.message)}[/red]")


@app.command()
def resume(
    request_id: Annotated[str, typer.Argument(help="The submitted request to finish.")],
    config_path: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Finish a request whose receipt never arrived.

    Waits for the transaction recorded at broadcast; nothing is sent again.

    Example:
        $ txgate resume 4f2a... -c txgate.yaml --db txgate.db
    """
    try:
        config = _load(config_path)
        with SubmissionStore(db or DEFAULT_DB) as store:
            with build_gateway(config, store=store) as gateway:
                receipt = gateway.resume(request_id)
                state = gateway.state(request_id) or RequestState.SUBMITTED
    except Exception as e:
        _fail("resume_error", e, json_output, debug)

    error = None
    if receipt.status == ReceiptStatus.REVERTED and not receipt.expected_revert:
        error = ExecutionRevert(
            tx_hash=receipt.tx_hash,
            revert_reason=receipt.revert_reason or "",
            request_id=request_id,
        )
    result = SubmissionResult(request_id=request_id, state=state, receipt=receipt, error=error)

    if json_output:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _display_submission(result)

    raise typer.Exit(code=0 if result.ok else 1)


@app.command()
def evaluate(
    sender: SenderOption,
    to: TargetOption,
    data: DataOption = "0x",
    value: ValueOption = "0",
    config_path: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Dry-run the configured firewall against a call.

    No endpoint is contacted, nothing is broadcast and no single-use
    approvals are consumed. Approvals already spent according to the audit
    database count as spent.

    Example:
        $ txgate evaluate --from 0xabc... --to 0xdef... -c txgate.yaml
    """
    try:
        config = _load(config_path)
        request = TransactionRequest.model_validate({"from": sender, "to": to, "data": data, "value": value})
        db_path = db or DEFAULT_DB
        store = SubmissionStore(db_path) if db_path.exists() else None
        try:
            result = LocalDecisionEndpoint(build_registry(config, store=store), name="evaluate").evaluate(request)
        finally:
            if store is not None:
                store.close()
    except Exception as e:
        _fail("evaluation_error", e, json_output, debug)

    if json_output:
        print(json.dumps(result.model_dump(mode="json", by_alias=True), indent=2, default=str))
    else:
        _display_verdicts(result, policy_names(config))

    raise typer.Exit(code=0 if result.approved else 1)


def _display_verdicts(result: ApprovalResult, names: dict[str, str]) -> None:
    if result.approved:
        console.print("[green]✓ approved[/green]")
    else:
        console.print("[red]✗ rejected[/red]")
        console.print(f"  Reason: [yellow]{escape(result.reason or '')}[/yellow]")

    if not result.verdicts:
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Policy", style="cyan")
    table.add_column("Kind")
    table.add_column("Verdict", width=8)
    table.add_column("Details")
    for verdict in result.verdicts:
        label = names.get(verdict.policy, verdict.policy)
        status = "[green]approve[/green]" if verdict.approved else "[red]deny[/red]"
        table.add_row(escape(label), verdict.kind.value, status, escape(verdict.reason))
    console.print(table)


@app.command()
def policies(
    consumer: Annotated[str, typer.Argument(help="Consumer address.")],
    config_path: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Show the active policies of a consumer, in evaluation order.

    Example:
        $ txgate policies 0xdef... -c txgate.yaml
    """
    try:
        config = _load(config_path)
        registry = build_registry(config)
        active = registry.snapshot(consumer)
    except Exception as e:
        _fail("config_error", e, json_output, debug)

    names = policy_names(config)
    rows = [
        {
            "address": entry.policy.address,
            "name": names.get(entry.policy.address),
            "kind": entry.policy.kind.value,
            "enabled": entry.enabled,
        }
        for entry in active
    ]

    if json_output:
        print(json.dumps({"consumer": consumer.lower(), "policies": rows}, indent=2))
        raise typer.Exit(code=0)

    if not rows:
        console.print(f"[yellow]No active policies for {escape(consumer)}; every call to it is rejected.[/yellow]")
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=3)
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Kind")
    table.add_column("Enabled", width=8)
    for index, row in enumerate(rows, 1):
        enabled = "[green]yes[/green]" if row["enabled"] else "[red]no[/red]"
        table.add_row(str(index), escape(row["name"] or "-"), row["address"], row["kind"], enabled)
    console.print(table)


@app.command()
def history(
    db: DbOption = None,
    limit: Annotated[
        int,
        typer.Option(
            "--limit",
            "-n",
            help="Maximum number of submissions to show.",
        ),
    ] = 20,
    state: Annotated[
        Optional[RequestState],
        typer.Option("--state", help="Only show submissions in this state."),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """
    List recorded submissions, most recent first.

    Example:
        $ txgate history --db txgate.db -n 50
    """
    db_path = db or DEFAULT_DB
    if not db_path.exists():
        console.print(f"[yellow]No database found at {db_path}[/yellow]")
        raise typer.Exit(code=0)

    with SubmissionStore(db_path) as store:
        records = store.list_submissions(limit=limit, state=state)

    if json_output:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        raise typer.Exit(code=0)

    if not records:
        console.print("[dim]No submissions found.[/dim]")
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Request ID", style="cyan")
    table.add_column("Created")
    table.add_column("State", width=18)
    table.add_column("From")
    table.add_column("To")
    table.add_column("Endpoint")
    for record in records:
        table.add_row(
            record.request_id,
            record.created_at.isoformat()[:19],
            _state_display(record.state),
            record.sender,
            record.to,
            escape(record.endpoint or "-"),
        )
    console.print(table)


def _state_display(state: RequestState) -> str:
    if state == RequestState.CONFIRMED:
        return f"[green]{state.value}[/green]"
    if state in (RequestState.REJECTED, RequestState.REVERTED):
        return f"[red]{state.value}[/red]"
    return f"[yellow]{state.value}[/yellow]"


@app.command()
def show(
    request_id: Annotated[str, typer.Argument(help="The request ID to show.")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Show one submission with its lifecycle transitions.

    Example:
        $ txgate show 4f2a... --db txgate.db
    """
    db_path = db or DEFAULT_DB
    if not db_path.exists():
        console.print(f"[red]Database not found: {db_path}[/red]")
        raise typer.Exit(code=1)

    with SubmissionStore(db_path) as store:
        record = store.get_submission(request_id)
        transitions = store.get_transitions(request_id) if record else []

    if record is None:
        console.print(f"[red]Request not found: {escape(request_id)}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        output = record.model_dump(mode="json")
        output["transitions"] = [t.model_dump(mode="json") for t in transitions]
        print(json.dumps(output, indent=2))
        raise typer.Exit(code=0)

    console.print(f"[bold]Request {record.request_id}[/bold]")
    console.print(f"  State: {_state_display(record.state)}")
    console.print(f"  From: {record.sender}")
    console.print(f"  To: {record.to}")
    console.print(f"  Value: {record.value}")
    console.print(f"  Data: {record.data[:66]}{'...' if len(record.data) > 66 else ''}")
    console.print(f"  Endpoint: {escape(record.endpoint or '-')}")
    if record.reason:
        console.print(f"  Reason: {escape(record.reason)}")
    if record.tx_hash:
        console.print(f"  Tx: [cyan]{record.tx_hash}[/cyan]")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("At")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Detail")
    for t in transitions:
        table.add_row(
            t.at.isoformat()[:19],
            t.from_state.value if t.from_state else "-",
            _state_display(t.to_state),
            escape(t.detail or ""),
        )
    console.print(table)


@app.command()
def doctor(
    config_path: ConfigOption = None,
    endpoint: Annotated[
        Optional[str],
        typer.Option("--endpoint", "-e", help="Endpoint to check.", envvar="TXGATE_ENDPOINT"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """
    Check configuration, decision endpoint and network reachability.

    Example:
        $ txgate doctor -c txgate.yaml
    """
    checks = []

    py_version = sys.version_info
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": f"{py_version.major}.{py_version.minor}.{py_version.micro}",
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })

    config = None
    try:
        config = _load(config_path)
        registry = build_registry(config)
        checks.append({
            "name": "Configuration",
            "ok": True,
            "value": str(config_path) if config_path else "defaults",
            "message": f"{len(registry)} policies, {len(registry.consumers())} consumers",
        })
    except TxGateError as e:
        checks.append({
            "name": "Configuration",
            "ok": False,
            "value": str(config_path),
            "message": e.message,
        })

    if config is not None:
        try:
            with build_endpoint(config, endpoint) as decision_endpoint:
                endpoint_ok, endpoint_message = decision_endpoint.check_connection()
                endpoint_name = decision_endpoint.name
        except TxGateError as e:
            endpoint_ok, endpoint_message, endpoint_name = False, e.message, endpoint or config.default_endpoint
        checks.append({
            "name": "Decision endpoint",
            "ok": endpoint_ok,
            "value": endpoint_name,
            "message": endpoint_message,
        })

        network = build_network(config)
        try:
            network_ok, network_message = network.check_connection()
        finally:
            network.close()
        checks.append({
            "name": "Network",
            "ok": network_ok,
            "value": config.network.rpc_url or "in-memory",
            "message": network_message,
        })

    all_ok = all(check["ok"] for check in checks)

    if json_output:
        print(json.dumps({"ok": all_ok, "version": __version__, "checks": checks}, indent=2))
    else:
        console.print(f"[bold]txgate doctor[/bold] v{__version__}")
        console.print()
        for check in checks:
            icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
            if check["ok"]:
                console.print(f"{icon} {check['name']}: [dim]{escape(check['value'])}[/dim] - {escape(check['message'])}")
            else:
                console.print(f"{icon} {check['name']}: [dim]{escape(check['value'])}[/dim]")
                console.print(f"    [red]{escape(check['message'])}[/red]")
        console.print()
        if all_ok:
            console.print("[green]All checks passed![/green]")
        else:
            console.print("[yellow]Some checks failed. See above for details.[/yellow]")

    raise typer.Exit(code=0 if all_ok else 1)


if __name__ == "__main__":
    app()
