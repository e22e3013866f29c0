"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        # instances print from worker threads; keep multi-line blocks together
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}"]
        if event:
            lines.append(f"Event: {event}")
        lines += [f"Jobs: {job_count}", ""]
        self._out(*lines)

    def print_suppressed(self, reason: str) -> None:
        self._out(f"RUN SUPPRESSED: {reason}")

    def print_plan(self, levels: List[List[str]], instances: Dict[str, List[str]]) -> None:
        """Print stages and the instances each job expands to."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels):
            self._out(f"Stage {idx + 1}:")
            for name in level:
                for inst in instances.get(name, [name]):
                    self._out(f"  {inst}")

    def print_instance_start(self, name: str, title: Optional[str] = None) -> None:
        if not self.quiet:
            label = f"{name} [{title}]" if title and title != name else name
            self._out(f"\nJOB STARTED: {label}")

    def print_step(self, instance: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{instance}] STEP: {name}")

    def print_step_skipped(self, instance: str, name: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"[{instance}] STEP SKIPPED: {name} ({reason})")

    def print_step_tolerated(self, instance: str, name: str, reason: str) -> None:
        """A failing best-effort step: recorded, not fatal."""
        first = reason.split("\n")[0] if reason else "unknown error"
        self._out(f"[{instance}] STEP FAILED (continuing): {name}: {first}")

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
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_instance_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_instance_done(self, name: str, status: str) -> None:
        if not self.quiet:
            self._out(f"JOB {status.upper()}: {name}")

    def print_results(self, results: Dict[str, str], status: str, best_effort: Optional[List[str]] = None) -> None:
        """Print final results summary."""
        best_effort = best_effort or []
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for name, st in results.items():
            marker = " (best-effort)" if name in best_effort else ""
            lines.append(f"  {name}: {st.upper()}{marker}")
        lines.append(f"\nPIPELINE: {status.upper()}")
        self._out(*lines)

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)


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
