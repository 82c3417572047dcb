"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from jobgraph.dag import PlannedStage
    from jobgraph.model import RunResult


STATUS_MARKS = {
    "succeeded": "✓",
    "failed": "✗",
    "skipped": "⏭",
    "cancelled": "⊘",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        name: str,
        instance_count: int,
        context: Optional[dict] = None,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        lines = ["\nRUN STARTED", f"Workflow: {name}", f"Jobs: {instance_count}"]
        for key in ("event", "ref", "sha"):
            if context and context.get(key):
                lines.append(f"{key.capitalize()}: {context[key]}")
        lines.append("")
        self._out(*lines)

    def print_job_start(self, name: str, environment: Optional[str] = None) -> None:
        """Print job start message."""
        if not self.quiet:
            suffix = f" (environment: {environment})" if environment else ""
            self._out(f"JOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] ⏭ {name} (condition false)")

    def print_step_retry(self, job: str, name: str, attempt: int, attempts: int) -> None:
        if not self.quiet:
            self._out(f"[{job}] ↻ {name} (attempt {attempt}/{attempts})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        """Print job completion message."""
        if self.quiet:
            return
        mark = STATUS_MARKS.get(status, "?")
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"{mark} {name}: {status.upper()}{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._out(f"⏭ {name}: SKIPPED ({reason})")

    def print_plan(self, stages: list["PlannedStage"]) -> None:
        """Print the validated stage plan."""
        for stage in stages:
            self._out(f"=== Stage {stage.index}: {stage.jobs} ===")
            for label in stage.instances:
                self._out(f"  {label}")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for inst in result.instances:
            status = inst.status.value
            extra = f" ({inst.reason})" if inst.reason and status in ("skipped", "cancelled") else ""
            lines.append(f"  {STATUS_MARKS.get(status, '?')} {inst.label}: {status.upper()}{extra}")
        lines.append("")
        lines.append(f"Run: {result.status.value.upper()} in {result.duration:.1f}s")
        self._out(*lines)
        for err in result.errors:
            self._out("", str(err), err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        if not self.quiet:
            self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
