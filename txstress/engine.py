"""
Run orchestration.

SenderPool -> Submitter -> ConfirmationTracker -> aggregate(), with the
RateController pacing the Submitter. Tracking runs alongside the sending phase
and drains after it; the run is only complete once every accepted handle has a
terminal result. A FatalError anywhere stops dispatch and is re-raised with the
partial summary attached.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, List, Optional

from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .config import LoadConfig
from .errors import ConfigError, FatalError
from .models import Accepted, RunCounters
from .pacing import RateController, Window, build_controller
from .report import HandleLog, console, generate_report, print_summary
from .sequence import SenderPool
from .stats import RunSummary, aggregate
from .submitter import Submitter
from .tracker import ConfirmationTracker

logger = logging.getLogger(__name__)

DISPATCH_REPORT_EVERY = 50


class LoadTestEngine:
    """
    Drives one stress run against a target system.

    Usage:
        async with JsonRpcTarget(url) as target:
            summary = await LoadTestEngine(target, LoadConfig.from_preset("slow-10tps")).run()
    """

    def __init__(
        self,
        target,
        config: LoadConfig,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.target = target
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self.counters = RunCounters(error_log_limit=config.error_log_limit)
        self.controller: Optional[RateController] = None
        self.senders: Optional[SenderPool] = None
        self.tracker: Optional[ConfirmationTracker] = None
        self.submitter: Optional[Submitter] = None
        self._started_at: float = 0
        self._stop_requested = False

    def stop(self):
        """Stop dispatching. Already dispatched requests are still tracked."""
        self._stop_requested = True
        if self.controller is not None:
            self.controller.stop()

    async def _group_number(self) -> Optional[int]:
        """Diagnostic only: any failure, fatal or not, just leaves it unknown."""
        getter = getattr(self.target, "get_current_group_number", None)
        if getter is None:
            return None
        try:
            return await getter()
        except Exception as e:
            logger.warning("Could not read current group number: %s", e)
            return None

    async def _resolve_senders(self) -> List[Any]:
        cfg = self.config
        if cfg.senders:
            return list(cfg.senders)
        if cfg.sender_count:
            accounts = await self.target.get_accounts()
            if len(accounts) < cfg.sender_count:
                raise ConfigError(
                    f"{cfg.sender_count} senders requested but the target manages {len(accounts)} accounts"
                )
            return accounts[:cfg.sender_count]
        return [cfg.sender]

    def _on_tracker_done(self, task: asyncio.Task):
        # tracking died with a FatalError: stop dispatching now, not at the end
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Confirmation tracking failed: %s", task.exception())
        self.controller.stop()

    # =========================================================================
    # DISPLAY
    # =========================================================================
    def _create_metrics_table(self) -> Table:
        """Live table of the running counters."""
        table = Table(title="📊 Live Transaction Stress Metrics", expand=True)
        table.add_column("Metric", style="cyan", width=20)
        table.add_column("Value", style="green", width=16)
        table.add_column("Metric", style="cyan", width=20)
        table.add_column("Value", style="green", width=16)

        m = self.counters
        c = self.controller
        elapsed = self._clock() - self._started_at if self._started_at else 0
        sent_rate = c.realized_rate if c is not None else 0
        confirmed_rate = m.total_confirmed / elapsed if elapsed > 0 else 0

        table.add_row(
            "Attempted", f"{m.total_attempted:,}",
            "Sent TPS", f"{sent_rate:,.1f}"
        )
        table.add_row(
            "Accepted", f"[green]{m.total_accepted:,}[/green]",
            "Rejected", f"[red]{m.total_rejected:,}[/red]"
        )
        table.add_row(
            "Confirmed", f"[green]{m.total_confirmed:,}[/green]",
            "Confirmed TPS", f"{confirmed_rate:,.1f}"
        )
        table.add_row(
            "Confirm Failed", f"[red]{m.total_confirm_failed:,}[/red]",
            "Timed Out", f"[yellow]{m.total_timed_out:,}[/yellow]"
        )
        table.add_row(
            "In Flight", f"{m.in_flight:,}",
            "Groups", f"{len(m.group_counts):,}"
        )
        table.add_row(
            "Elapsed", f"{elapsed:.1f}s",
            "Windows", f"{len(c.rounds) if c is not None else 0:,}"
        )
        return table

    def _report_window(self, window: Window):
        m = self.counters
        c = self.controller
        attempted = m.total_attempted
        success = m.total_accepted / attempted * 100 if attempted else 0

        if self.config.policy == "round-based":
            duration = self._clock() - window.started_at
            rate = window.size / duration if duration > 0 else 0
            console.print(
                f"📤 Round {window.index + 1}: {duration * 1000:.0f}ms | {rate:,.0f} TPS | "
                f"Total: {m.total_accepted:,} | Success: {success:.1f}%"
            )
        elif attempted // DISPATCH_REPORT_EVERY != (attempted - window.size) // DISPATCH_REPORT_EVERY:
            target = self.config.target_rate
            deviation = (c.realized_rate - target) / target * 100
            console.print(
                f"Progress: {attempted:,}{'/' + format(c.total, ',') if c.total else ''} | "
                f"Elapsed: {c.elapsed:.2f}s | Avg TPS: {c.realized_rate:.2f} | Target: {target:g} | "
                f"Deviation: {deviation:+.1f}% | Errors: {m.total_rejected:,}"
            )

    def _report_confirmations(self, counters: RunCounters):
        console.print(f"   ✅ {counters.total_confirmed:,}/{counters.total_accepted:,} confirmed...")


    # =========================================================================
    # RUN
    # =========================================================================
    def _summarize(
        self,
        sending_duration: float,
        start_group: Optional[int] = None,
        end_group: Optional[int] = None,
        fatal: Optional[FatalError] = None,
    ) -> RunSummary:
        pool = self.senders
        return aggregate(
            self.counters,
            sending_duration=sending_duration,
            total_duration=self._clock() - self._started_at,
            test_type=self.config.test_type,
            rounds=self.controller.rounds,
            target_rate=self.config.nominal_rate,
            base_sequence=pool.primary.base() if pool is not None else None,
            last_sequence=pool.primary.last if pool is not None else None,
            sender_ranges=pool.ranges() if pool is not None else (),
            sample_handles=self.submitter.sample_handles if self.submitter is not None else (),
            start_group=start_group,
            end_group=end_group,
            fatal_error=str(fatal) if fatal is not None else None,
        )

    def _fail(self, fatal: FatalError, summary: RunSummary):
        logger.error("Run aborted: %s", fatal)
        fatal.summary = summary
        raise fatal

    async def run(self) -> RunSummary:
        """
        Execute the full run and return its summary.
        A FatalError is re-raised with the partial summary in `exc.summary`.
        """
        cfg = self.config
        self.counters = RunCounters(error_log_limit=cfg.error_log_limit)
        self.controller = build_controller(cfg, clock=self._clock, sleep=self._sleep)
        self.senders = None
        self.submitter = None
        if self._stop_requested:
            self.controller.stop()

        shape = (
            f"Rate: {cfg.target_rate:g} TPS | Tick: {cfg.tick_size}"
            if cfg.policy == "fixed-interval"
            else f"Round: {cfg.batch_size} x {cfg.concurrency} | Delay: {cfg.round_delay * 1000:.0f}ms"
        )
        bounds = " | ".join(
            part for part in (
                f"Duration: {cfg.duration:g}s" if cfg.duration else "",
                f"Total: {cfg.total:,}" if cfg.total is not None else "",
            ) if part
        )
        console.print(Panel(
            f"[bold blue]{cfg.test_type}[/bold blue] ({cfg.policy})\n{shape} | {bounds}",
            title="🚀 Starting Test"
        ))

        # ---------------------------------------------------------------
        # Setup
        # ---------------------------------------------------------------
        self._started_at = self._clock()
        try:
            self.senders = await SenderPool.from_target(self.target, await self._resolve_senders())
        except FatalError as e:
            self._fail(e, self._summarize(0.0, fatal=e))
        for r in self.senders.ranges():
            who = f" ({r['sender']})" if r["sender"] is not None else ""
            console.print(f"📊 Starting sequence{who}: {r['base_sequence']}")
        start_group = await self._group_number()

        self.tracker = ConfirmationTracker(
            self.target,
            self.counters,
            timeout=cfg.confirmation_timeout,
            confirmations_required=cfg.confirmations_required,
            batch_size=cfg.confirmation_batch_size,
            progress_every=cfg.progress_every,
            on_progress=self._report_confirmations,
            error_truncate=cfg.error_truncate,
        )
        handle_log = HandleLog(cfg.handles_output) if cfg.handles_output else None
        sinks = []
        if cfg.track_confirmations:
            sinks.append(self.tracker.enqueue)
        if handle_log is not None:
            sinks.append(handle_log.write)

        def on_accepted(outcome: Accepted):
            for sink in sinks:
                sink(outcome)

        self.submitter = Submitter(
            self.target,
            self.senders,
            self.counters,
            destinations=cfg.destinations,
            payload=cfg.payload,
            resource_limit=cfg.resource_limit,
            pricing=cfg.pricing,
            on_accepted=on_accepted,
            error_truncate=cfg.error_truncate,
        )

        summary: Optional[RunSummary] = None
        if handle_log is not None:
            handle_log.open(cfg, self.senders.senders)
        try:
            summary, fatal = await self._execute(start_group)
        finally:
            if handle_log is not None:
                handle_log.close(summary)

        if fatal is not None:
            self._fail(fatal, summary)
        return summary

    async def _execute(self, start_group: Optional[int]):
        """Sending and tracking phases. Returns (summary, fatal error or None)."""
        cfg = self.config
        self._started_at = self._clock()
        tracker_task = None
        if cfg.track_confirmations:
            tracker_task = asyncio.create_task(self.tracker.run())
            tracker_task.add_done_callback(self._on_tracker_done)
        fatal: Optional[FatalError] = None

        live = Live(self._create_metrics_table(), console=console, refresh_per_second=4) if cfg.show_live else None
        updater_task = None
        if live is not None:
            live.start()

            async def updater():
                while True:
                    live.update(self._create_metrics_table())
                    await asyncio.sleep(0.25)

            updater_task = asyncio.create_task(updater())

        try:
            # ---------------------------------------------------------------
            # Sending phase
            # ---------------------------------------------------------------
            console.print("🔥 SENDING PHASE")
            try:
                async with aclosing(self.controller.windows()) as windows:
                    async for window in windows:
                        await self.submitter.dispatch(window)
                        self._report_window(window)
            except FatalError as e:
                fatal = e
                self.controller.stop()
            sending_duration = self._clock() - self._started_at

            console.print(
                f"⏸️  SENDING COMPLETE | Duration: {sending_duration:.2f}s | "
                f"Sent: {self.counters.total_accepted:,} | "
                f"Rate: {self.counters.total_attempted / sending_duration if sending_duration > 0 else 0:.2f} TPS"
            )

            # ---------------------------------------------------------------
            # Tracking phase
            # ---------------------------------------------------------------
            if tracker_task is not None:
                self.tracker.close()
                if fatal is not None:
                    tracker_task.cancel()
                    self.tracker.cancel()
                    await asyncio.gather(tracker_task, return_exceptions=True)
                else:
                    console.print(f"⏳ Waiting for {self.counters.in_flight:,} transactions...")
                    try:
                        await tracker_task
                    except FatalError as e:
                        fatal = e
        finally:
            if updater_task is not None:
                updater_task.cancel()
                await asyncio.gather(updater_task, return_exceptions=True)
                live.update(self._create_metrics_table())
                live.stop()

        end_group = await self._group_number() if fatal is None else None
        return self._summarize(sending_duration, start_group, end_group, fatal), fatal


async def run_preset(target, preset_name: str, output: Optional[str] = None, **overrides) -> RunSummary:
    """Run a preset against `target`, print the summary and optionally save it."""
    config = LoadConfig.from_preset(preset_name, **overrides)
    engine = LoadTestEngine(target, config)
    try:
        summary = await engine.run()
    except FatalError as e:
        if e.summary is not None:
            print_summary(e.summary)
            if output:
                generate_report(e.summary, output)
        raise

    print_summary(summary)
    if output:
        generate_report(summary, output)
    return summary
