"""
Exit code definitions for the diagnostics command line.

Provides standardized exit codes that scripts and CI jobs can interpret to
understand why a diagnostics run did not produce results.
"""

import enum

from diagnostics_orchestrator import DiagnosisResult


class DiagnosticsExitCode(enum.IntEnum):
    """Exit codes for diagnostics runs."""

    SUCCESS = 0  # Diagnostics retrieved (possibly none)
    UNSUPPORTED_LANGUAGE = 2  # No language server handles the file type
    NO_SERVER = 3  # No language server could be started
    DIAGNOSTICS_FAILED = 4  # Every server failed while checking the file
    INVALID_CONFIGURATION = 5  # Invalid arguments or environment settings
    UNEXPECTED_ERROR = 6  # Unexpected exception


REASON_EXIT_CODES: dict[str | None, DiagnosticsExitCode] = {
    "unsupported_language": DiagnosticsExitCode.UNSUPPORTED_LANGUAGE,
    "no_server": DiagnosticsExitCode.NO_SERVER,
    "diagnostics_failed": DiagnosticsExitCode.DIAGNOSTICS_FAILED,
}


def exit_code_for(results: list[DiagnosisResult]) -> DiagnosticsExitCode:
    """Determine the exit code for a run; the most severe failure wins."""
    codes = [
        REASON_EXIT_CODES.get(result.reason, DiagnosticsExitCode.UNEXPECTED_ERROR)
        for result in results
        if not result.ok
    ]
    if not codes:
        return DiagnosticsExitCode.SUCCESS
    return max(codes)
