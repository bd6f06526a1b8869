"""
Result sink: console summary, flat JSON report, preset listing, logging setup.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence, TextIO

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from .config import PRESETS, LoadConfig
from .models import Accepted
from .stats import RunSummary

console = Console()


def setup_logging(level: str = "INFO"):
    """Route library loggers through rich."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def generate_report(summary: RunSummary, output_path: Optional[str] = None) -> str:
    """Generate the flat JSON summary, optionally writing it to `output_path`."""
    json_str = json.dumps(summary.to_dict(), indent=2, default=str)

    if output_path:
        Path(output_path).write_text(json_str)
        console.print(f"[green]💾 Results saved to: {output_path}[/green]")

    return json_str


class HandleLog:
    """
    Every accepted handle, one per line, for later verification against the
    target. Header and summary lines start with `#`.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.count = 0
        self._file: Optional[TextIO] = None

    def open(self, config: LoadConfig, senders: Sequence = ()):
        self._file = self.path.open("w")
        self._file.write(f"# {config.test_type} - {datetime.now(timezone.utc).isoformat()}\n")
        senders = [s for s in senders if s is not None]
        if senders:
            self._file.write(f"# Senders: {len(senders)}\n")
        self._file.write(f"# Recipients: {len(config.destinations)}\n")
        if config.nominal_rate:
            self._file.write(f"# Target TPS: {config.nominal_rate:g}\n")
        if config.duration:
            self._file.write(f"# Duration: {config.duration:g} seconds\n")
        if config.total is not None:
            self._file.write(f"# Total Transactions: {config.total:,}\n")
        self._file.write("\n")

    def write(self, outcome: Accepted):
        """Submitter callback: append one accepted handle."""
        if self._file is None:
            return
        self._file.write(f"{outcome.handle}\n")
        self.count += 1

    def close(self, summary: Optional[RunSummary] = None):
        if self._file is None:
            return
        if summary is not None:
            s = summary
            self._file.write("\n# === SUMMARY ===\n")
            self._file.write(f"# Total Sent: {s.total_accepted}/{s.total_attempted}\n")
            self._file.write(f"# Errors: {s.total_rejected}\n")
            self._file.write(f"# Duration: {s.sending_duration:.2f}s\n")
            self._file.write(f"# Actual TPS: {s.throughput_attempted:.2f}\n")
            if s.rate_deviation_percent is not None:
                self._file.write(f"# Deviation: {s.rate_deviation_percent:.2f}%\n")
            for r in s.sender_ranges:
                who = f" {r['sender']}" if r["sender"] is not None else ""
                self._file.write(f"# Sequence Range{who}: {r['base_sequence']}..{r['last_sequence']}\n")
            if not s.complete:
                self._file.write(f"# Aborted: {s.fatal_error}\n")
        self._file.close()
        self._file = None
        console.print(f"[green]💾 {self.count:,} handles saved to: {self.path}[/green]")


def _format_histogram(summary: RunSummary, limit: int = 10) -> str:
    if not summary.per_group_histogram:
        return "  No confirmations recorded"
    lines = []
    items = list(summary.per_group_histogram.items())
    for key, count in items[:limit]:
        pct = count / max(1, summary.total_confirmed) * 100
        lines.append(f"  [cyan]{key}[/cyan]: {count:,} ({pct:.1f}%)")
    if len(items) > limit:
        lines.append(f"  [dim]... {len(items) - limit} more groups[/dim]")
    return "\n".join(lines)


def _format_errors(summary: RunSummary, limit: int = 5) -> str:
    if not summary.errors:
        return "  None"
    lines = []
    for entry in summary.errors[:limit]:
        where = entry.get("sequence", entry.get("handle"))
        lines.append(f"  [red]{entry['stage']}[/red] {where}: {entry['error']}")
    hidden = len(summary.errors) - limit + summary.errors_dropped
    if hidden > 0:
        lines.append(f"  [dim]... {hidden} more[/dim]")
    return "\n".join(lines)


def print_summary(summary: RunSummary):
    """Print the final results panel."""
    s = summary
    g = s.group_stats
    success = f"{s.success_rate * 100:.2f}%" if s.success_rate is not None else "n/a"

    rate_lines = ""
    if s.target_rate:
        rate_lines = (
            f"[cyan]Target Rate:[/cyan]        {s.target_rate:,.2f} TPS\n"
            f"[cyan]Deviation:[/cyan]          {s.rate_deviation_percent:+.2f}%\n"
        )
    if s.rounds.count:
        rate_lines += (
            f"[cyan]Rounds:[/cyan]             {s.rounds.count:,} "
            f"(avg {s.rounds.avg_duration * 1000:.0f}ms, {s.rounds.avg_rate:,.0f} TPS/round)\n"
        )

    group_lines = "  No groups observed"
    if g.groups:
        group_lines = (
            f"  Groups:          {g.groups:,}\n"
            f"  Avg per Group:   {g.avg_per_group:.2f}\n"
            f"  Max per Group:   {g.max_per_group:,}\n"
            f"  Avg Group Time:  {g.avg_group_time:.2f}s\n"
            f"  Theoretical Max: {g.theoretical_max_throughput:,.2f} TPS"
        )

    if len(s.sender_ranges) > 1:
        rate_lines += f"[cyan]Senders:[/cyan]            {len(s.sender_ranges):,}\n"
        for r in s.sender_ranges[:5]:
            rate_lines += f"  [dim]{r['sender']}: {r['base_sequence']}..{r['last_sequence']}[/dim]\n"

    status = "[green]COMPLETE[/green]" if s.complete else f"[red]INCOMPLETE[/red] ({s.fatal_error})"

    console.print("\n")
    console.print(Panel(
        f"""[bold]📊 {s.test_type.upper()} RESULTS[/bold]  {status}

[cyan]Attempted:[/cyan]          {s.total_attempted:,}
[green]Accepted:[/green]           {s.total_accepted:,} ({success})
[red]Rejected:[/red]           {s.total_rejected:,}
[green]Confirmed:[/green]          {s.total_confirmed:,}
[red]Confirm Failed:[/red]     {s.total_confirm_failed:,}
[yellow]Timed Out:[/yellow]          {s.total_timed_out:,}
[dim]In Flight:[/dim]          {s.total_in_flight:,}

[cyan]Sending Phase:[/cyan]      {s.sending_duration:.2f}s
[cyan]Total Duration:[/cyan]     {s.total_duration:.2f}s
[cyan]Sent TPS:[/cyan]           {s.throughput_attempted:,.2f}
[cyan]Confirmed TPS:[/cyan]      {s.throughput_confirmed:,.2f}
{rate_lines}
[bold]📦 Group Statistics:[/bold]
{group_lines}

[bold]Top Groups:[/bold]
{_format_histogram(s)}

[bold]Errors:[/bold]
{_format_errors(s)}
""",
        title="Final Results",
        border_style="green" if s.complete and (s.success_rate or 0) >= 0.95 else "red",
    ))


def print_presets():
    """Print available presets."""
    console.print("\n[bold]Available Presets:[/bold]\n")
    for name, preset in PRESETS.items():
        console.print(f"  {name:<20} {preset['name']:<32} - {preset['description']}")
    console.print("")
