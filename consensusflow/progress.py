"""
Progress log and progress streaming.

The ProgressLog is the single source of truth for what a run has done so
far: an append-only file, truncated only when a new run starts. The
executor is its only writer. The ProgressStreamer serves its growing
content to any number of subscribers; every subscriber starts at offset 0
(full replay) and keeps its own offset. Appends made in-process wake
subscribers immediately, and a fixed poll interval catches everything else.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Set, Tuple, Union

FileIdentity = Tuple[int, int]

logger = logging.getLogger(__name__)

WAITING_MESSAGE = "Waiting for progress file to be created..."
DEFAULT_POLL_INTERVAL = 0.5


class ProgressLog:
    """Append-only text log of one run.

    Attributes
    ----------
    path : Path
        File backing the log
    """

    def __init__(self, path):
        self.path = Path(path)
        self._waiters: Set[asyncio.Event] = set()

    def exists(self) -> bool:
        return self.path.exists()

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def reset(self, header: Optional[str] = None) -> None:
        """Start a fresh log for a new run, optionally writing a first line.

        The new content is written to a sibling file and moved over the old
        one, so the log gets a new file identity that tailing readers in any
        process can tell apart from the previous run's file.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = b"" if header is None else (header.rstrip("\n") + "\n").encode("utf-8")
        staging = self.path.with_name(self.path.name + ".new")
        staging.write_bytes(content)
        os.replace(staging, self.path)
        logger.debug(f"Progress log reset: {self.path}")
        self._notify()

    def append(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        with open(self.path, "ab") as f:
            f.write(data)
        self._notify()

    def append_line(self, line: str) -> None:
        self.append(line.rstrip("\n") + "\n")

    def read_from(self, offset: int) -> bytes:
        """Return every byte appended since offset."""
        try:
            with open(self.path, "rb") as f:
                f.seek(offset)
                return f.read()
        except FileNotFoundError:
            return b""

    def read_chunk(
        self, offset: int, identity: Optional[FileIdentity] = None
    ) -> Tuple[Optional[FileIdentity], int, bytes]:
        """
        Read new bytes from the current log file.

        Parameters
        ----------
        offset : int
            Bytes already consumed from the file named by identity
        identity : tuple of (int, int), optional
            ``(st_dev, st_ino)`` of the file offset refers to

        Returns
        -------
        tuple of (identity, int, bytes)
            The identity of the file read (None when the log does not
            exist), the offset the data starts at, and the data. The start
            is 0 whenever the file was replaced or shrank since offset.
        """
        try:
            f = open(self.path, "rb")
        except FileNotFoundError:
            return None, 0, b""
        with f:
            st = os.fstat(f.fileno())
            current = (st.st_dev, st.st_ino)
            if current != identity or st.st_size < offset:
                offset = 0
            f.seek(offset)
            return current, offset, f.read()

    def read_text(self) -> str:
        return self.read_from(0).decode("utf-8", errors="replace")

    def add_waiter(self, event: asyncio.Event) -> None:
        self._waiters.add(event)

    def remove_waiter(self, event: asyncio.Event) -> None:
        self._waiters.discard(event)

    @property
    def waiter_count(self) -> int:
        return len(self._waiters)

    def _notify(self) -> None:
        for event in list(self._waiters):
            event.set()

    def __repr__(self) -> str:
        return f"ProgressLog(path='{self.path}')"


@dataclass
class ProgressEvent:
    """One delivery to a subscriber: the non-blank lines appended since the last one."""

    lines: List[str] = field(default_factory=list)
    waiting: bool = False

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def split_complete_lines(data: bytes) -> Tuple[List[str], bytes]:
    """
    Split a byte buffer into complete, non-blank lines.

    Parameters
    ----------
    data : bytes
        Buffered partial line followed by newly read bytes

    Returns
    -------
    tuple of (list of str, bytes)
        Complete non-blank lines, and the trailing bytes that do not end
        with a newline yet
    """
    parts = data.split(b"\n")
    pending = parts.pop()
    lines = []
    for part in parts:
        line = part.decode("utf-8", errors="replace").rstrip("\r")
        if line.strip():
            lines.append(line)
    return lines, pending


def format_sse(event: ProgressEvent) -> str:
    """Render an event as one text/event-stream frame."""
    return "".join(f"data: {line}\n" for line in event.lines) + "\n"


async def _wait_for(event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        pass


class ProgressStreamer:
    """Serves a ProgressLog to independent subscribers.

    Attributes
    ----------
    log : ProgressLog
        Log being tailed
    poll_interval : float
        Seconds between reads when no in-process append wakes a subscriber
    """

    def __init__(self, log: ProgressLog, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.log = log
        self.poll_interval = poll_interval
        self._active = 0

    @property
    def subscriber_count(self) -> int:
        return self._active

    async def subscribe(
        self, until: Optional[Callable[[], bool]] = None
    ) -> AsyncIterator[ProgressEvent]:
        """
        Yield progress events from the start of the log onward.

        Parameters
        ----------
        until : callable, optional
            Checked before every read; once it returns True the stream ends
            after delivering whatever the log holds at that point. Without
            it the stream runs until the subscriber stops iterating.

        Yields
        ------
        ProgressEvent
            Complete non-blank lines appended since the previous event, or
            a single waiting placeholder while the log does not exist
        """
        offset = 0
        identity: Optional[FileIdentity] = None
        pending = b""
        waiting_sent = False
        wake = asyncio.Event()
        self.log.add_waiter(wake)
        self._active += 1
        logger.debug(f"Progress subscriber attached ({self._active} active)")
        try:
            while True:
                finished = until is not None and until()
                wake.clear()

                current, start, chunk = self.log.read_chunk(offset, identity)
                if current is None:
                    if not waiting_sent:
                        waiting_sent = True
                        yield ProgressEvent([WAITING_MESSAGE], waiting=True)
                else:
                    waiting_sent = False
                    if start != offset or current != identity:
                        # replaced or truncated by a new run
                        pending = b""
                    identity = current
                    offset = start + len(chunk)
                    if chunk:
                        lines, pending = split_complete_lines(pending + chunk)
                        if lines:
                            yield ProgressEvent(lines)

                if finished:
                    if pending.strip():
                        yield ProgressEvent([pending.decode("utf-8", errors="replace").strip()])
                    return
                await _wait_for(wake, self.poll_interval)
        finally:
            self.log.remove_waiter(wake)
            self._active -= 1
            logger.debug(f"Progress subscriber detached ({self._active} active)")
