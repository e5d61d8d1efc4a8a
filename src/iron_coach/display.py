# display.py
# All terminal trace output for the coach core.
#
# This module owns presentation entirely. The orchestrator never formats
# strings for the terminal: it calls named functions here. Output goes to
# stderr and stays silent unless tracing was switched on via configure().
#
# Colour language:
#   cyan    scaffolding / turn routing
#   blue    model calls
#   yellow  context payload and validation checkpoints
#   green   success / confirmed
#   red     failures and fallbacks
#   magenta tool calls and proposals

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from iron_coach.models import ContextContract, ContextMeta, Fingerprint, Proposal, ToolEvent

console = Console(stderr=True, quiet=True)


def configure(trace: bool) -> None:
    console.quiet = not trace


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Turn entry
# ---------------------------------------------------------------------------


def banner(model: str, write_tools: bool) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Iron Coach[/bold cyan]\n"
            "[dim]Bounded tool loop + validated structured drafts[/dim]\n\n"
            f"[dim]Model       :[/dim] [white]{model}[/white]\n"
            f"[dim]Write tools :[/dim] [white]{'enabled' if write_tools else 'disabled'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def turn_started(message: str, mode: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]NEW TURN ({mode})[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{message}[/white]",
            title=_label("USER", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def payload_built(contract: ContextContract, fingerprint: Fingerprint, allowed_tools: list[str]) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Field", style="dim")
    table.add_column("Value", style="white")
    table.add_row("Gym", contract.active_gym_name or "none")
    table.add_row("Equipment", str(contract.equipment_count))
    table.add_row("Library", str(contract.exercise_library_count))
    table.add_row("Bytes", str(contract.context_bytes))
    table.add_row("Build ms", str(contract.build_ms))
    table.add_row("Fingerprint", f"{fingerprint.hash[:16]}…")
    table.add_row("Tools", ", ".join(allowed_tools) or "none")
    console.print(
        Panel(table, title=_label("CONTEXT PAYLOAD", "yellow"), border_style="yellow", padding=(0, 1))
    )


def snapshot_truncated(meta: ContextMeta) -> None:
    console.print(
        f"  [yellow]↳ Snapshot truncated to {meta.size_bytes} bytes[/yellow] "
        f"[dim]omitted: {', '.join(meta.omitted)}[/dim]"
    )


# ---------------------------------------------------------------------------
# Model loop
# ---------------------------------------------------------------------------


def model_call(iteration: int, total: int, message_count: int) -> None:
    console.print()
    console.print(
        _label("MODEL", "blue"),
        f"[blue] → call {iteration}/{total} with {message_count} message(s)…[/blue]",
    )


def context_window_retry(error: str) -> None:
    console.print(
        Panel(
            "[bold yellow]Context window exceeded.[/bold yellow]\n"
            f"[dim]{_mono(error, 200)}[/dim]\n"
            "[white]Retrying once with only the latest user message.[/white]",
            title=_label("RETRY", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def tool_event(event: ToolEvent, arguments: dict) -> None:
    color = {"success": "green", "pending": "magenta", "error": "red"}[event.status]
    code = f" [dim]({event.code.value})[/dim]" if event.code else ""
    console.print(
        f"  [magenta]Tool[/magenta]  [bold white]{event.summary}[/bold white]"
        f"  [{color}]{event.status}[/{color}]{code}"
        f"  [dim]{_mono(json.dumps(arguments, default=str), 80)}[/dim]"
    )


def proposal_queued(proposal: Proposal) -> None:
    console.print(
        Panel(
            f"[bold white]{proposal.summary}[/bold white]\n"
            "[dim]Write tool queued. Nothing runs until the proposal is confirmed.[/dim]",
            title=_label("PROPOSAL", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def proposal_resolved(proposal: Proposal) -> None:
    ok = proposal.status.value == "success"
    color = "green" if ok else "red"
    detail = proposal.error or json.dumps(proposal.result, default=str)
    console.print(
        f"  [{color}]{'✓' if ok else '✗'} {proposal.summary}[/{color}]  [dim]{_mono(detail, 100)}[/dim]"
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validation_failed(mode: str, error: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{mode} contract failed.[/bold red]\n\n[white]{error}[/white]\n"
            "[dim]Requesting one corrected completion.[/dim]",
            title=_label("VALIDATION ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def repair_outcome(status: str, error: str | None) -> None:
    if status == "repaired":
        console.print("  [bold green]✓ Repair accepted[/bold green]")
    else:
        console.print(f"  [bold red]✗ Repair failed, using fallback[/bold red]  [dim]{error or ''}[/dim]")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(text: str, status: str) -> None:
    color = "green" if status != "failed" else "red"
    console.print()
    console.print(
        Panel(
            f"[white]{text}[/white]",
            title=_label(f"COACH ({status})", color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()
