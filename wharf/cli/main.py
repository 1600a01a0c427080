"""wharf CLI.

`wharf serve` runs the daemon that owns the workload processes. Every
other command talks to that daemon over its HTTP API.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from wharf.cli.context import ApiError, get_client, run_async

app = typer.Typer(
    name="wharf",
    help="wharf -- run git projects as supervised local servers.",
    no_args_is_help=True,
)
console = Console()

_STATUS_STYLE = {
    "running": "bold green",
    "starting": "yellow",
    "stopping": "yellow",
    "stopped": "dim",
    "error": "bold red",
}

_LOG_STYLE = {
    "stdout": "white",
    "stderr": "red",
    "info": "cyan",
    "error": "bold red",
}


def _call(method: str, path: str, **kwargs: Any) -> Any:
    """One API call; errors are printed and end the command."""
    try:
        return run_async(get_client().request(method, path, **kwargs))
    except ApiError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def _parse_pairs(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            console.print(f"[red]Expected KEY=VALUE, got '{pair}'[/red]")
            raise typer.Exit(2)
        env[key] = value
    return env


def _parse_config(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        console.print(f"[red]--config must be a JSON object: {e}[/red]")
        raise typer.Exit(2)
    if not isinstance(value, dict):
        console.print("[red]--config must be a JSON object[/red]")
        raise typer.Exit(2)
    return value


def _styled_status(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


# ── Daemon ───────────────────────────────────────────────────────

@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the wharf daemon (API + process supervision)."""
    from wharf.serve import main, setup_logging

    setup_logging()
    console.print("[bold cyan]wharf[/bold cyan] daemon starting...")
    try:
        run_async(main(host=host, port=port))
    except KeyboardInterrupt:
        console.print("\n[dim]wharf stopped.[/dim]")


@app.command("status")
def status():
    """Show daemon status."""
    info = _call("GET", "/api/status")
    console.print(
        f"wharf v{info['version']}: {info['workloads_running']}/{info['workloads_total']} "
        f"workloads running, up {info['uptime_s']}s"
    )


# ── Workloads ────────────────────────────────────────────────────

@app.command("add")
def add(
    source_url: str = typer.Argument(help="Git URL of the project"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE, repeatable"),
    run_command: Optional[str] = typer.Option(None, "--run", help="Explicit launch command"),
    entry_point: Optional[str] = typer.Option(None, "--entry", help="Entry file, relative to the checkout"),
    config: Optional[str] = typer.Option(None, "--config", help="JSON object handed to the workload"),
):
    """Clone a repository and register it as a workload."""
    payload: dict[str, Any] = {
        "source_url": source_url,
        "name": name,
        "env": _parse_pairs(env),
        "config": _parse_config(config) or {},
        "run_command": run_command,
        "entry_point": entry_point,
    }
    with console.status(f"[bold cyan]cloning {source_url}...", spinner="dots"):
        workload = _call("POST", "/api/workloads", json=payload)
    console.print(
        f"[green]Registered[/green] [bold]{workload['name']}[/bold] "
        f"({workload['ecosystem']}) as [cyan]{workload['id']}[/cyan]"
    )


@app.command("ls")
def ls():
    """List workloads."""
    workloads = _call("GET", "/api/workloads")
    if not workloads:
        console.print("[dim]No workloads registered.[/dim]")
        return

    table = Table(title="Workloads")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Ecosystem", style="blue")
    table.add_column("Status")
    table.add_column("Port", justify="right", style="yellow")
    table.add_column("Source", style="dim")

    for w in workloads:
        table.add_row(
            w["id"],
            w["name"],
            w["ecosystem"],
            _styled_status(w["status"]),
            str(w["port"]) if w.get("port") else "",
            w["source_url"],
        )
    console.print(table)


@app.command("show")
def show(workload_id: str = typer.Argument(help="Workload ID")):
    """Show one workload in detail."""
    w = _call("GET", f"/api/workloads/{workload_id}")
    console.print(f"[bold]{w['name']}[/bold] [cyan]{w['id']}[/cyan] {_styled_status(w['status'])}")
    console.print(f"  source     {w['source_url']}")
    console.print(f"  directory  {w['directory']}")
    console.print(f"  ecosystem  {w['ecosystem']}  built={w['is_built']}")
    if w.get("port"):
        console.print(f"  port       {w['port']}")
    if w.get("run_command"):
        console.print(f"  run        {w['run_command']}")
    if w.get("entry_point"):
        console.print(f"  entry      {w['entry_point']}")
    if w.get("env"):
        console.print(f"  env        {', '.join(w['env'])}")


@app.command("start")
def start(workload_id: str = typer.Argument(help="Workload ID")):
    """Start a workload."""
    with console.status("[bold cyan]starting...", spinner="dots"):
        w = _call("POST", f"/api/workloads/{workload_id}/start")
    console.print(f"[green]{w['name']}[/green] is {_styled_status(w['status'])}")


@app.command("stop")
def stop(workload_id: str = typer.Argument(help="Workload ID")):
    """Stop a workload."""
    w = _call("POST", f"/api/workloads/{workload_id}/stop")
    console.print(f"[yellow]{w['name']}[/yellow] is {_styled_status(w['status'])}")


@app.command("rebuild")
def rebuild(workload_id: str = typer.Argument(help="Workload ID")):
    """Re-run a Node.js workload's build step."""
    with console.status("[bold cyan]building...", spinner="dots"):
        w = _call("POST", f"/api/workloads/{workload_id}/rebuild")
    console.print(f"[green]Rebuilt {w['name']}[/green]")


@app.command("rm")
def rm(
    workload_id: str = typer.Argument(help="Workload ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
):
    """Stop a workload and delete it along with its checkout."""
    if not yes and not typer.confirm(f"Delete workload {workload_id} and its directory?"):
        raise typer.Exit(1)
    _call("DELETE", f"/api/workloads/{workload_id}")
    console.print(f"[dim]Deleted {workload_id}.[/dim]")


@app.command("logs")
def logs(
    workload_id: str = typer.Argument(help="Workload ID"),
    limit: int = typer.Option(100, "--limit", "-n", help="Max entries"),
):
    """Show a workload's most recent log entries."""
    entries = _call("GET", f"/api/workloads/{workload_id}/logs", params={"limit": limit})
    if not entries:
        console.print("[dim]No logs yet.[/dim]")
        return
    for entry in entries:
        style = _LOG_STYLE.get(entry["kind"], "white")
        stamp = entry["timestamp"][11:19]
        console.print(f"[dim]{stamp}[/dim] [{style}]{escape(entry['message'])}[/{style}]", highlight=False)


@app.command("config")
def config(
    workload_id: str = typer.Argument(help="Workload ID"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE, repeatable; replaces the env"),
    run_command: Optional[str] = typer.Option(None, "--run", help="Launch command ('' clears it)"),
    entry_point: Optional[str] = typer.Option(None, "--entry", help="Entry file ('' clears it)"),
    config_json: Optional[str] = typer.Option(None, "--config", help="JSON object; replaces the config"),
):
    """Update a workload's settings. Applies on the next start."""
    patch: dict[str, Any] = {}
    if name is not None:
        patch["name"] = name
    if env:
        patch["env"] = _parse_pairs(env)
    if run_command is not None:
        patch["run_command"] = run_command
    if entry_point is not None:
        patch["entry_point"] = entry_point
    parsed = _parse_config(config_json)
    if parsed is not None:
        patch["config"] = parsed
    if not patch:
        console.print("[dim]Nothing to update.[/dim]")
        return
    w = _call("PATCH", f"/api/workloads/{workload_id}", json=patch)
    console.print(f"[green]Updated {w['name']}[/green]")


# ── Batch ────────────────────────────────────────────────────────

def _print_results(title: str, results: dict[str, dict]) -> None:
    if not results:
        console.print("[dim]Nothing to do.[/dim]")
        return
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Result")
    for wid, result in results.items():
        if result["success"]:
            table.add_row(wid, "[green]ok[/green]")
        else:
            table.add_row(wid, f"[red]{result['error']}[/red]")
    console.print(table)


@app.command("start-all")
def start_all():
    """Start every workload."""
    with console.status("[bold cyan]starting all...", spinner="dots"):
        results = _call("POST", "/api/actions/start-all")
    _print_results("Start all", results)


@app.command("stop-all")
def stop_all():
    """Stop every running workload."""
    results = _call("POST", "/api/actions/stop-all")
    _print_results("Stop all", results)


# ── Orphans ──────────────────────────────────────────────────────

@app.command("orphans")
def orphans():
    """List runtime processes wharf is not supervising."""
    found = _call("GET", "/api/orphans")
    if not found:
        console.print("[dim]No orphan processes.[/dim]")
        return

    table = Table(title="Orphan processes")
    table.add_column("PID", style="cyan", justify="right")
    table.add_column("Name", style="white")
    table.add_column("Port", style="yellow", justify="right")
    table.add_column("Workload", style="blue")
    table.add_column("Command", style="dim", max_width=60)
    for o in found:
        table.add_row(
            str(o["pid"]),
            o["name"],
            str(o["port"]) if o.get("port") else "",
            o.get("workload_id") or "",
            o.get("command", ""),
        )
    console.print(table)


@app.command("kill")
def kill(pid: int = typer.Argument(help="PID of an orphan process")):
    """Kill an orphan process."""
    result = _call("DELETE", f"/api/orphans/{pid}")
    suffix = f" (workload {result['workload_id']} marked stopped)" if result.get("workload_id") else ""
    console.print(f"[green]Killed {pid}[/green]{suffix}")


@app.command("version")
def version_cmd():
    """Show wharf version."""
    from wharf import __version__
    console.print(f"wharf v{__version__}")
