"""
Command execution with streamed output.

A command is spawned under the ResourceLimiter, and a reader thread copies
its stdout to a sink while the calling thread waits for the process to
exit. Output is forwarded chunk by chunk as it is produced; nothing is
buffered in full.

stderr is not forwarded. Only stdout reaches the client.
"""

import logging
import os
import select
import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from .limiter import ResourceLimiter
from .protocol import CHUNK_SIZE, Marker, encode_marker

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Destination for command output. Writes may raise OSError."""

    def write(self, data: bytes) -> None:
        ...


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"  # ran, exited non-zero or was killed
    NOT_STARTED = "not_started"  # shell could not be spawned


@dataclass
class Outcome:
    """Result of one command invocation."""

    kind: OutcomeKind
    detail: str = ""
    exit_code: Optional[int] = None
    pgid: Optional[int] = None
    sink_failed: bool = False
    # Output so far ended mid-line; a following marker or error line needs a newline first
    needs_newline: bool = False

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


def describe_exit(returncode: int) -> str:
    """Human-readable exit detail, e.g. "exit status 1" or "signal: SIGKILL"."""
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"
    return f"exit status {returncode}"


class _CopyState:
    def __init__(self):
        self.bytes_copied = 0
        self.last_byte = b""
        self.sink_failed = False

    @property
    def needs_newline(self) -> bool:
        return self.last_byte not in (b"", b"\n")


class CommandExecutor:
    """Runs shell commands one at a time on behalf of a session."""

    def __init__(self, limiter: Optional[ResourceLimiter] = None, poll_interval: float = 0.1):
        self.limiter = limiter or ResourceLimiter()
        self.poll_interval = poll_interval

    def execute(self, sink: Sink, command: str) -> Outcome:
        """Run ``command`` and stream its stdout into ``sink``.

        On success the EOF marker is written after the output. On failure
        nothing beyond the command's own output is written; the caller
        reports the error and the marker.
        """
        spec = self.limiter.spawn_spec(command)

        try:
            process = subprocess.Popen(
                spec.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                start_new_session=spec.start_new_session,
            )
        except OSError as e:
            logger.error(f"Could not start command {command!r}: {e}")
            return Outcome(OutcomeKind.NOT_STARTED, detail=f"Could not start command: {e}")

        state = _CopyState()
        exited = threading.Event()
        reader = threading.Thread(
            target=self._copy_output,
            args=(process.stdout, sink, exited, state),
            daemon=True,
            name=f"output-copy-{process.pid}",
        )
        reader.start()

        try:
            returncode = process.wait()
        finally:
            exited.set()
            reader.join()
            process.stdout.close()

        logger.debug(
            f"Command {command!r} (pid {process.pid}) exited with {returncode}, "
            f"{state.bytes_copied} bytes of output"
        )

        if returncode != 0:
            return Outcome(
                OutcomeKind.FAILED,
                detail=f"Command exited with status: {describe_exit(returncode)}",
                exit_code=returncode,
                pgid=process.pid,
                sink_failed=state.sink_failed,
                needs_newline=state.needs_newline,
            )

        outcome = Outcome(
            OutcomeKind.SUCCESS,
            exit_code=0,
            pgid=process.pid,
            sink_failed=state.sink_failed,
            needs_newline=state.needs_newline,
        )
        if not state.sink_failed:
            # Keep the marker on its own line when the output lacks a final newline
            trailer = encode_marker(Marker.EOF)
            if outcome.needs_newline:
                trailer = b"\n" + trailer
            try:
                sink.write(trailer)
            except OSError as e:
                logger.warning(f"Failed to write end-of-output marker: {e}")
                outcome.sink_failed = True
        return outcome

    def _copy_output(self, stream, sink: Sink, exited: threading.Event, state: _CopyState):
        """Forward stdout chunks to the sink until EOF.

        Once the process has exited, stop as soon as the pipe goes quiet: a
        background child may still hold it open, and its late output must
        not interleave with the next response.
        """
        fd = stream.fileno()
        while True:
            # Sampled before waiting: only a full quiet poll after exit ends the copy
            had_exited = exited.is_set()
            ready, _, _ = select.select([fd], [], [], self.poll_interval)
            if not ready:
                if had_exited:
                    logger.debug("Pipe still open after exit, ending output copy")
                    break
                continue

            try:
                chunk = os.read(fd, CHUNK_SIZE)
            except OSError as e:
                logger.error(f"Error reading command output: {e}")
                break
            if not chunk:
                break

            state.bytes_copied += len(chunk)
            if state.sink_failed:
                # Keep draining so the child never blocks on a full pipe
                continue
            try:
                sink.write(chunk)
                state.last_byte = chunk[-1:]
            except OSError as e:
                logger.warning(f"Error sending command output to client: {e}")
                state.sink_failed = True
