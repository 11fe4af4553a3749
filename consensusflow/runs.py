"""
Run management - at most one active pipeline run per process.

Starting a run validates and resolves the upload set synchronously (errors
reach the caller and leave the current state untouched), writes the plan,
truncates the progress log and then hands the plan to a PipelineExecutor
running as a background asyncio task. A second start while a run is active
is rejected instead of interleaving two plans in one log.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import NoActiveRunError, RunAlreadyInProgressError, RunFailedToStart
from .executor import PipelineExecutor
from .models import UploadedFile
from .plan import ExecutionPlan, build_plan, write_plan
from .progress import ProgressLog
from .samples import GENOME_EXTENSIONS, resolve_uploads
from .utils import require_external_tools
from .workspace import Workspace

logger = logging.getLogger(__name__)

START_RECORD = "Pipeline started"


class RunStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    FAILED_TO_START = "failed_to_start"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass
class RunState:
    """State of the current (or most recent) run."""

    run_id: str
    plan_path: Path
    log_path: Path
    samples: List[str]
    status: RunStatus = RunStatus.STARTING
    exit_code: Optional[int] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "samples": list(self.samples),
            "plan_path": str(self.plan_path),
            "log_path": str(self.log_path),
            "exit_code": self.exit_code,
            "failed_step": self.failed_step,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class RunManager:
    """Owns the single RunState and the progress log of a run directory.

    Attributes
    ----------
    workspace : Workspace
        Run directory paths
    config : dict
        Loaded configuration
    progress_log : ProgressLog
        Log shared by every run in this workspace
    """

    def __init__(
        self,
        workspace: Workspace,
        config: Optional[Dict[str, Any]] = None,
        executor_factory: Callable[..., PipelineExecutor] = PipelineExecutor,
    ):
        self.workspace = workspace
        self.config = config or {}
        self.executor_factory = executor_factory
        self.progress_log = ProgressLog(workspace.progress_path)
        self._state: Optional[RunState] = None
        self._executor: Optional[PipelineExecutor] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def _check_tools(self) -> None:
        if not self.config.get("check_tools", True):
            return
        tools = [self.config.get("shell", "bash")] + list(self.config.get("required_tools", []))
        require_external_tools(tools)

    def start(self, uploads: Sequence[UploadedFile]) -> RunState:
        """
        Validate an upload set and start its pipeline in the background.

        Must be called from a running event loop. Returns as soon as the
        executor task is scheduled.

        Parameters
        ----------
        uploads : sequence of UploadedFile
            Upload set in upload order

        Returns
        -------
        RunState
            The new run's state

        Raises
        ------
        RunAlreadyInProgressError
            If a run is active
        ResolutionError
            If the upload set cannot be resolved
        ToolNotFoundError
            If tool checking is enabled and a required tool is missing
        """
        if self.is_active:
            raise RunAlreadyInProgressError(self._state.run_id)
        loop = asyncio.get_running_loop()

        self._check_tools()
        genome, samples = resolve_uploads(
            uploads, extensions=self.config.get("genome_extensions", GENOME_EXTENSIONS)
        )
        self.workspace.ensure()
        plan = build_plan(genome, samples, self.workspace, self.config)
        write_plan(plan, self.workspace.plan_path)
        for sample in samples:
            logger.info(
                f"Expecting sample files: {sample.read1_path}, {sample.read2_path}"
            )

        state = RunState(
            run_id=new_run_id(),
            plan_path=self.workspace.plan_path,
            log_path=self.progress_log.path,
            samples=[sample.name for sample in samples],
        )
        self.progress_log.reset(START_RECORD)
        self._state = state
        self._executor = self.executor_factory(
            self.progress_log, shell=self.config.get("shell", "bash")
        )
        self._task = loop.create_task(self._execute(state, plan, self._executor))
        logger.info(f"Run {state.run_id} accepted with {len(samples)} sample(s)")
        return state

    async def _execute(
        self, state: RunState, plan: ExecutionPlan, executor: PipelineExecutor
    ) -> RunState:
        if state.status == RunStatus.STARTING:
            state.status = RunStatus.RUNNING
        try:
            outcome = await executor.run(state.plan_path, plan.labels)
        except RunFailedToStart as e:
            state.status = RunStatus.FAILED_TO_START
            state.error = e.reason
            return state
        except BaseException as e:
            state.status = RunStatus.FAILED
            state.error = str(e) or type(e).__name__
            raise
        finally:
            state.finished_at = _now()

        state.exit_code = outcome.exit_code
        if outcome.cancelled:
            state.status = RunStatus.CANCELLED
        elif outcome.exit_code == 0:
            state.status = RunStatus.COMPLETED
        else:
            state.status = RunStatus.FAILED
        if outcome.failed_step is not None:
            state.failed_step = outcome.failed_step.label
        logger.info(f"Run {state.run_id} finished: {state.status.value} (exit code {state.exit_code})")
        return state

    def cancel(self) -> RunState:
        """
        Terminate the active run.

        Raises
        ------
        NoActiveRunError
            If no run is active
        """
        if not self.is_active:
            raise NoActiveRunError()
        logger.info(f"Cancelling run {self._state.run_id}")
        self._state.status = RunStatus.CANCELLED
        self._executor.cancel()
        return self._state

    async def wait(self) -> Optional[RunState]:
        """Wait for the current run's background task to finish."""
        if self._task is not None:
            await self._task
        return self._state
