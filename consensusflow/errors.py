"""
Error taxonomy for the orchestration engine.

Resolution-time errors (NoGenomeFoundError, NoSamplesError, MismatchedPairError)
and RunAlreadyInProgressError are raised synchronously to the run trigger caller
and never mutate run state. RunFailedToStart covers spawn-time infrastructure
failures. Step failures at runtime are not exceptions: they surface only as
StepFailed records in the progress log.
"""

from dataclasses import dataclass
from typing import Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, stage: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize pipeline error.

        Parameters
        ----------
        message : str
            Error message
        stage : str, optional
            Stage where error occurred
        details : dict, optional
            Additional error details
        """
        super().__init__(message)
        self.stage = stage
        self.details = details or {}


class ResolutionError(PipelineError):
    """Raised when an upload set cannot be resolved into samples."""


class NoGenomeFoundError(ResolutionError):
    """Raised when no uploaded file carries a reference genome extension."""

    def __init__(self, extensions=(".fasta", ".fa")):
        """Initialize no genome found error."""
        joined = " or ".join(extensions)
        super().__init__(
            f"Please upload a {joined} file.", "resolution", {"extensions": list(extensions)}
        )


class MismatchedPairError(ResolutionError):
    """Raised when two consecutive read files do not form a sample pair."""

    def __init__(self, first: str, second: Optional[str], reason: Optional[str] = None):
        """Initialize mismatched pair error."""
        if reason is None:
            if second is None:
                reason = f"File '{first}' has no partner read file"
            else:
                reason = f"File pairs do not match: '{first}' and '{second}'"
        super().__init__(reason, "resolution", {"first": first, "second": second})
        self.first = first
        self.second = second


class InvalidSampleNameError(MismatchedPairError):
    """Raised when a pair resolves to a sample name that is not a plain file name."""

    def __init__(self, first: str, second: str, sample_name: str):
        """Initialize invalid sample name error."""
        super().__init__(
            first,
            second,
            reason=f"Sample name '{sample_name}' derived from '{first}' must not contain "
            "a directory part",
        )
        self.sample_name = sample_name


class NoSamplesError(ResolutionError):
    """Raised when an upload set holds a genome but no read files."""

    def __init__(self):
        """Initialize no samples error."""
        super().__init__("Please upload at least one pair of read files.", "resolution")


class RunAlreadyInProgressError(PipelineError):
    """Raised when a run is requested while another one is active."""

    def __init__(self, run_id: str):
        """Initialize run in progress error."""
        super().__init__(f"Run {run_id} is already in progress", details={"run_id": run_id})
        self.run_id = run_id


class NoActiveRunError(PipelineError):
    """Raised when cancelling while no run is active."""

    def __init__(self):
        """Initialize no active run error."""
        super().__init__("No pipeline run is in progress")


class RunFailedToStart(PipelineError):
    """Raised when the pipeline process cannot be spawned."""

    def __init__(self, reason: str, details: Optional[Dict] = None):
        """Initialize run failed to start error."""
        super().__init__(f"Pipeline failed to start: {reason}", "startup", details)
        self.reason = reason


class ToolNotFoundError(RunFailedToStart):
    """Raised when a required external tool is not found."""

    def __init__(self, tool: str):
        """Initialize tool not found error."""
        super().__init__(f"Required tool '{tool}' not found in PATH", {"tool": tool})
        self.tool = tool


class PlanError(PipelineError):
    """Raised when a generated plan references an artifact nothing produces."""


@dataclass(frozen=True)
class StepFailed:
    """Runtime failure of a single step, recorded in the progress log."""

    label: str
    exit_code: int

    def __str__(self) -> str:
        return f"Step failed: {self.label} (exit code {self.exit_code})"
