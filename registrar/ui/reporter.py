from datetime import datetime
from typing import Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..core.models import (
    AbortReason,
    EngineEvent,
    EventKind,
    OutcomeKind,
    RegistrationResult,
    rao_to_tao,
)

console = Console()

OUTCOME_STYLES = {
    OutcomeKind.SUCCESS: "green",
    OutcomeKind.COST_EXCEEDED: "yellow",
    OutcomeKind.ALREADY_REGISTERED: "cyan",
    OutcomeKind.INSUFFICIENT_BALANCE: "red",
}

def short_key(ss58: str) -> str:
    return f"{ss58[:8]}…{ss58[-4:]}" if len(ss58) > 14 else ss58

class ConsoleReporter:
    """Prints engine events to the terminal.

    verbosity 0 shows attempts, outcomes and results; 1 adds every cost
    snapshot; 2 adds every state transition.
    """

    def __init__(self, verbosity: int = 0, output: Optional[Console] = None):
        self.verbosity = verbosity
        self.console = output or console

    def __call__(self, event: EngineEvent):
        line = self.format(event)
        if line:
            self.console.print(line)

    def format(self, event: EngineEvent) -> Optional[str]:
        stamp = datetime.now().strftime("%H:%M:%S")
        prefix = f"[dim]{stamp}[/dim] [bold]{short_key(event.hotkey)}[/bold]"

        if event.kind == EventKind.STATE_CHANGED:
            if self.verbosity < 2:
                return None
            return f"{prefix} [dim]{event.state.value}[/dim] {event.message}".rstrip()

        if event.kind == EventKind.COST_SNAPSHOT:
            if self.verbosity < 1:
                return None
            snapshot = event.data['snapshot']
            return (
                f"{prefix} Cost TAO {rao_to_tao(snapshot.recycle_cost):.9f} "
                f"at block {snapshot.observed_at_block}"
            )

        if event.kind == EventKind.ATTEMPT_SUBMITTED:
            return f"{prefix} [yellow]Submitting registration (attempt {event.data['attempt']})[/yellow]"

        if event.kind == EventKind.OUTCOME_CLASSIFIED:
            outcome = event.data['outcome']
            if outcome.kind == OutcomeKind.COST_EXCEEDED and self.verbosity < 1:
                return None
            style = OUTCOME_STYLES.get(outcome.kind, "red")
            return f"{prefix} [{style}]{outcome.kind.value}[/{style}] {_outcome_detail(outcome)}".rstrip()

        if event.kind == EventKind.FINISHED:
            result = event.data['result']
            style = "green" if result.ok else "red"
            return f"{prefix} [{style}]{result.describe()}[/{style}]"

        return None

def _outcome_detail(outcome) -> str:
    kind = outcome.kind
    if kind == OutcomeKind.COST_EXCEEDED:
        return f"TAO {rao_to_tao(outcome.observed):.9f} > TAO {rao_to_tao(outcome.max_cost):.9f}"
    if kind == OutcomeKind.RATE_LIMITED:
        return f"{outcome.code} (retry after {outcome.retry_after:.1f}s)"
    if kind == OutcomeKind.EXTRINSIC_REJECTED:
        return outcome.module_error_code
    if kind == OutcomeKind.CHAIN_UNREACHABLE:
        return outcome.reason
    if kind == OutcomeKind.SUCCESS:
        return f"block {outcome.block_number}"
    return ""

def render_results(results: Dict[str, RegistrationResult], netuid: int):
    table = Table(title=f"Registration Results (netuid {netuid})", show_header=True, header_style="bold")
    table.add_column("Hotkey")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Details")

    for hotkey, result in results.items():
        if result.ok:
            status = "[green]Registered[/green]"
        elif result.reason == AbortReason.ALREADY_REGISTERED:
            status = "[cyan]Already registered[/cyan]"
        else:
            status = f"[red]{result.reason.value}[/red]"
        table.add_row(hotkey, status, str(result.attempts_made), result.describe())

    console.print(table)

def render_request_summary(hotkeys: List[str], netuid: int, max_cost: int, endpoint: str, tip: int):
    console.print(Panel.fit(
        f"Subnet: {netuid}\n"
        f"Hotkeys: {', '.join(short_key(h) for h in hotkeys)}\n"
        f"Max cost: TAO {rao_to_tao(max_cost):.9f}\n"
        f"Tip: TAO {rao_to_tao(tip):.9f}\n"
        f"Endpoint: {endpoint}",
        title="Burned Registration"
    ))
