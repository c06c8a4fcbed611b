"""
External command execution.

Every child runs in its own process group so that a timeout or a
cancellation terminates the whole group (e.g. mysqldump and anything it
spawned), not just the direct child.
"""

import logging
import os
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .errors import CommandError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
KILL_GRACE_SECONDS = 5
_STDERR_TAIL = 2000


@dataclass
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: bytes
    stderr: str


def _kill_group(proc: subprocess.Popen):
    """Terminate the child's process group, escalating to SIGKILL."""
    try:
        pgid = os.getpgid(proc.pid)
    except ProcessLookupError:
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass


class _Watchdog(threading.Thread):
    """Kills the process group when the deadline passes or cancellation is requested."""

    def __init__(self, proc, timeout, cancel_event):
        super().__init__(daemon=True)
        self.proc = proc
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancel_event = cancel_event
        self.reason = None
        self._done = threading.Event()

    def run(self):
        while not self._done.is_set() and self.proc.poll() is None:
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.reason = 'cancelled'
            elif self.deadline is not None and time.monotonic() >= self.deadline:
                self.reason = 'timed out'
            if self.reason:
                _kill_group(self.proc)
                return
            self._done.wait(0.2)

    def stop(self):
        self._done.set()


def run_command(
    argv: Sequence[str],
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    input_stream=None,
    output_stream=None,
    check: bool = True,
    env: Optional[dict] = None,
) -> CommandResult:
    """
    Run an external command to completion.

    Args:
        argv: Command and arguments (never passed through a shell)
        timeout: Seconds before the process group is killed
        cancel_event: When set, the process group is killed
        input_stream: Binary file-like object streamed into the child's stdin
        output_stream: Binary file-like object receiving the child's stdout;
            when omitted, stdout is captured into the result
        check: Raise CommandError on a non-zero exit status
        env: Extra environment variables for the child

    Returns:
        CommandResult

    Raises:
        CommandError: If the command is missing, fails, times out or is cancelled
    """
    argv = [str(a) for a in argv]
    if input_stream is not None and output_stream is not None:
        raise ValueError("Streaming both stdin and stdout is not supported")

    logger.debug(f"Running command: {' '.join(shlex.quote(a) for a in argv)}")

    with tempfile.TemporaryFile() as stderr_file, tempfile.TemporaryFile() as stdout_file:
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input_stream is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE if output_stream is not None else stdout_file,
                stderr=stderr_file,
                start_new_session=True,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError:
            raise CommandError(f"Command not found: {argv[0]}", returncode=127)
        except OSError as e:
            raise CommandError(f"Failed to start {argv[0]}: {e}")

        watchdog = _Watchdog(proc, timeout, cancel_event)
        watchdog.start()

        try:
            if output_stream is not None:
                _pump(proc.stdout, output_stream)
                proc.stdout.close()
            elif input_stream is not None:
                try:
                    _pump(input_stream, proc.stdin)
                except BrokenPipeError:
                    logger.debug(f"{argv[0]} closed its input early")
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        pass
            returncode = proc.wait()
        except BaseException:
            _kill_group(proc)
            raise
        finally:
            watchdog.stop()
            watchdog.join()

        stderr_file.seek(0)
        stderr = stderr_file.read().decode('utf-8', errors='replace')[-_STDERR_TAIL:]
        stdout = b''
        if output_stream is None:
            stdout_file.seek(0)
            stdout = stdout_file.read()

    if watchdog.reason:
        raise CommandError(
            f"{argv[0]} {watchdog.reason} after {timeout}s" if watchdog.reason == 'timed out'
            else f"{argv[0]} {watchdog.reason}",
            returncode=returncode,
            stderr=stderr,
        )

    if check and returncode != 0:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else 'no error output'
        raise CommandError(
            f"{argv[0]} exited with status {returncode}: {detail}",
            returncode=returncode,
            stderr=stderr,
        )

    return CommandResult(argv=argv, returncode=returncode, stdout=stdout, stderr=stderr)


def _pump(source, sink):
    while True:
        chunk = source.read(CHUNK_SIZE)
        if not chunk:
            break
        sink.write(chunk)


def check_tools(binaries: Iterable[str]) -> List[str]:
    """
    Return the external binaries that are not available on PATH.

    Args:
        binaries: Command names or absolute paths

    Returns:
        List of missing binaries (empty when all are present)
    """
    missing = []
    for binary in binaries:
        if not binary:
            continue
        if shutil.which(binary) is None:
            missing.append(binary)
    return missing
