"""Console output formatting utilities for hpcbuild."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ..model import PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and log tails
        """
        self.debug = debug

    def print_run_started(
        self,
        pipeline: str,
        stage_count: int,
        prefix: str,
    ) -> None:
        """Print run start information."""
        print("\nBUILD STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Prefix: {prefix}")
        print(f"Stages: {stage_count}")
        print()

    def print_stage_start(self, name: str) -> None:
        """Print the banner for a stage that is about to build."""
        print(f"\nSTAGE STARTED: {name}")

    def print_step(self, name: str) -> None:
        """Print the name of the step being run."""
        print(f"STEP: {name}")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        """Print a stage skipped by its idempotency check, with the reason."""
        print(f"\nSTAGE STARTED: {name}")
        print(f"STATUS: skipped ({reason})")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print stage success, with its duration when known."""
        if duration is not None:
            print(f"STATUS: success ({duration:.1f}s)")
        else:
            print("STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Stage name
            reason: Failure reason/error message
            exit_code: Optional exit code of the failing command
            hint: Optional hint for user (log path, install hint)
            output: Optional tail of the captured command output
        """
        print(f"STAGE FAILED: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
            if output:
                print("Output (tail):")
                print(output)
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_warning(self, message: str) -> None:
        """Print a non-fatal warning to stderr."""
        print(f"WARNING: {message}", file=sys.stderr)

    def print_plan(self, entries: Iterable) -> None:
        """Print which stages a run would skip or build (runner.PlanEntry items)."""
        print("\nPLAN")
        for e in entries:
            action = "skip" if e.built else "build"
            print(f"  {e.name}: {action} ({e.reason})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for r in result.results:
            print(f"  {r.name}: {r.status.value.upper()}")
        if result.ok:
            print("\nBuild completed successfully!")
        else:
            print(f"\nBuild failed at stage: {result.failed_stage}")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print an informational progress line."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
