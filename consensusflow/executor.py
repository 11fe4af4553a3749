"""
Pipeline executor - runs a rendered plan as one supervised child process.

The child's standard output and standard error are merged and appended to
the progress log chunk by chunk as they are produced. The plan script stops
at the first failing step (``set -e``); the executor never retries. When the
child exits, a final record with its exit status is appended.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import RunFailedToStart, StepFailed
from .progress import ProgressLog

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class RunCompleted:
    """Outcome of a plan whose process was spawned and has exited.

    Attributes
    ----------
    exit_code : int
        Exit status of the child; negative when killed by a signal
    cancelled : bool
        True if the run was terminated through cancel()
    failed_step : StepFailed, optional
        Last step that had started when the child exited non-zero
    """

    exit_code: int
    cancelled: bool = False
    failed_step: Optional[StepFailed] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


def completion_record(exit_code: int) -> str:
    return f"Pipeline finished with exit code {exit_code}"


class PipelineExecutor:
    """Runs one plan in one child process and records it in a ProgressLog.

    An executor instance runs at most one plan.

    Attributes
    ----------
    progress_log : ProgressLog
        Log receiving every output line and the final status
    shell : str
        Interpreter used to run the plan script
    """

    def __init__(self, progress_log: ProgressLog, shell: str = "bash"):
        self.progress_log = progress_log
        self.shell = shell
        self._process: Optional[asyncio.subprocess.Process] = None
        self._cancelled = False
        self._started = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _fail_to_start(self, reason: str) -> RunFailedToStart:
        error = RunFailedToStart(reason)
        self.progress_log.append_line(str(error))
        logger.error(str(error))
        return error

    async def run(self, plan_path, step_labels: Iterable[str] = ()) -> RunCompleted:
        """
        Execute a plan script and wait for it to finish.

        Parameters
        ----------
        plan_path : Path or str
            Rendered plan script
        step_labels : iterable of str
            Labels the script echoes at step entry; used to name the
            failing step when the child exits non-zero

        Returns
        -------
        RunCompleted

        Raises
        ------
        RunFailedToStart
            If the plan is missing or the child process cannot be spawned;
            the reason is also written to the progress log
        RuntimeError
            If this executor has already been started
        """
        if self._started:
            raise RuntimeError("Cannot start executor twice")
        self._started = True

        plan_path = Path(plan_path)
        if not plan_path.is_file():
            raise self._fail_to_start(f"plan script not found: {plan_path}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.shell,
                str(plan_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise self._fail_to_start(f"{self.shell}: {e.strerror or e}") from e

        logger.info(f"Pipeline process {self._process.pid} started for {plan_path}")
        if self._cancelled:
            self._terminate()

        labels = set(step_labels)
        current_step = None
        buffered = b""

        while True:
            chunk = await self._process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.progress_log.append(chunk)
            buffered += chunk
            *lines, buffered = buffered.split(b"\n")
            for raw in lines:
                line = raw.decode("utf-8", errors="replace").rstrip("\r")
                logger.debug(f"pipeline: {line}")
                if line in labels:
                    current_step = line

        exit_code = await self._process.wait()
        logger.info(f"Pipeline process {self._process.pid} exited with code {exit_code}")

        if buffered:
            self.progress_log.append("\n")

        failed_step = None
        if self._cancelled:
            self.progress_log.append_line("Pipeline cancelled")
        elif exit_code != 0 and current_step is not None:
            failed_step = StepFailed(current_step, exit_code)
            self.progress_log.append_line(str(failed_step))
        self.progress_log.append_line(completion_record(exit_code))

        return RunCompleted(exit_code=exit_code, cancelled=self._cancelled, failed_step=failed_step)

    def cancel(self) -> None:
        """Terminate the child process and every tool it started."""
        self._cancelled = True
        if self.running:
            self._terminate()

    def _terminate(self) -> None:
        logger.info(f"Sending SIGTERM to pipeline process group {self._process.pid}")
        try:
            os.killpg(os.getpgid(self._process.pid), signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Pipeline process already exited")
