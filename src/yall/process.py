"""Spawning the package-manager process in a project folder.

The command line is interpreted by the shell, as users pass package-manager
commands verbatim (``yall add lodash --dev``). Output is streamed to the
parent's stdout/stderr while it is produced; stderr is also buffered so that
failures can be reported and inspected for cache corruption.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import shlex
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]")
_READ_CHUNK_SIZE = 64 * 1024


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


@dataclass(frozen=True)
class ProcessOutcome:
    """Result of one spawned process.

    Attributes:
        returncode: Exit code, or None when the process could not be started.
        stderr: Buffered stderr with ANSI sequences removed.
        error: Spawn error message when the process could not be started.
    """

    returncode: int | None
    stderr: str = ""
    error: str | None = None


class ProcessSpawner:
    """Runs package-manager commands and tracks the processes in flight.

    Attributes:
        executable: Package-manager executable (``yarn``, ``npm`` or a path).
        stdout: Stream receiving child stdout (None uses ``sys.stdout``).
        stderr: Stream receiving child stderr (None uses ``sys.stderr``).
    """

    def __init__(
        self,
        executable: str,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.executable = executable
        self.stdout = stdout
        self.stderr = stderr
        self._active: set[asyncio.subprocess.Process] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def build_command(self, args: Sequence[str]) -> str:
        """Compose the shell command line.

        ``args`` are shell fragments and are not quoted again; callers quote
        paths they append.
        """
        return " ".join([shlex.quote(self.executable), *(arg for arg in args if arg)])

    async def run(self, args: Sequence[str], *, cwd: Path) -> ProcessOutcome:
        cmd = self.build_command(args)
        env = {**os.environ, "FORCE_COLOR": "1"}
        logger.debug("Spawning `%s` in %s", cmd, cwd)
        try:
            proc = await asyncio.create_subprocess_shell(
                cmd,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            return ProcessOutcome(returncode=None, error=strip_ansi(str(exc)))

        self._active.add(proc)
        buffered: list[bytes] = []
        try:
            await asyncio.gather(
                _pump(proc.stdout, self.stdout or sys.stdout),
                _pump(proc.stderr, self.stderr or sys.stderr, buffered),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            _terminate(proc)
            raise
        finally:
            self._active.discard(proc)

        stderr_text = b"".join(buffered).decode("utf-8", errors="replace")
        return ProcessOutcome(returncode=returncode, stderr=strip_ansi(stderr_text))

    def terminate_all(self) -> None:
        """Terminate every process still running."""
        for proc in list(self._active):
            _terminate(proc)


async def _pump(
    reader: asyncio.StreamReader | None,
    sink: TextIO,
    buffer: list[bytes] | None = None,
) -> None:
    if reader is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await reader.read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        if buffer is not None:
            buffer.append(chunk)
        sink.write(decoder.decode(chunk))
        sink.flush()
    tail = decoder.decode(b"", final=True)
    if tail:
        sink.write(tail)
        sink.flush()


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        pass
