"""
Resource limits for executed commands.

Commands run through the system shell with a CPU-time ulimit and in a new
session, which makes the child the leader of its own process group. The
quota is enforced by the kernel on the shell and everything it forks; going
over it kills the process (SIGXCPU, then SIGKILL at the hard limit), which
the executor sees as an ordinary non-zero exit.

This is POSIX-only. Wall-clock time is not limited: a command that sleeps
uses no CPU and may run indefinitely.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import List

from .config import DEFAULT_CPU_SECONDS, DEFAULT_SHELL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpawnSpec:
    """How to start one command (ready for subprocess.Popen)."""

    argv: List[str]
    start_new_session: bool = True


class ResourceLimiter:
    """Wraps a command line in a CPU quota and its own process group."""

    def __init__(self, cpu_seconds: int = DEFAULT_CPU_SECONDS, shell: str = DEFAULT_SHELL):
        self.cpu_seconds = cpu_seconds
        self.shell = shell

    def spawn_spec(self, command: str) -> SpawnSpec:
        """Build the spawn specification for ``command``.

        The outer shell sets the limit and then replaces itself with an
        inner shell running the command, so the limit is inherited by the
        whole process tree. The command is passed as a positional argument,
        never spliced into the script text.
        """
        if self.cpu_seconds and self.cpu_seconds > 0:
            script = f'ulimit -t {int(self.cpu_seconds)}; exec "$0" -c "$1"'
            argv = [self.shell, "-c", script, self.shell, command]
        else:
            argv = [self.shell, "-c", command]

        logger.debug(f"Spawn spec: {shlex.join(argv)}")
        return SpawnSpec(argv=argv)
