"""Child process supervision for a single external invocation.

``supervise()`` spawns the executable, bounds it with a deadline and
returns exactly one terminal outcome.  It never retries.

Safety guarantees:
- The child runs in its own session so the whole process group can be
  killed on timeout or cancellation.
- The deadline bounds the child's exit, not the end of its output.  A
  descendant that keeps stdout or stderr open after the child exits gets
  a short grace period and is then killed with the rest of the group.
- A cancelled caller still waits for the killed child to be reaped before
  ``asyncio.CancelledError`` propagates.
- Any non-zero exit is an ``InvocationError``, even if output was produced.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field

from extcall.errors import ExternalTimeoutError, InvocationError

__all__ = ["Completion", "Invocation", "supervise"]

log = logging.getLogger(__name__)

_STDERR_TAIL = 200
_READ_CHUNK = 64 * 1024
# How long to keep reading pipes after the child has exited or been killed.
_PIPE_GRACE = 0.5
# Exit polling interval; Process.wait() also waits for the pipes to close.
_EXIT_POLL = 0.05
_POSIX = os.name == "posix"


@dataclass(frozen=True)
class Invocation:
    """Everything needed to spawn one child process."""

    argv: list[str]
    timeout: float
    env: dict[str, str] = field(default_factory=dict)
    stdin: bytes | None = None
    cwd: str | None = None
    log_stdout: bool = True

    @property
    def name(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else "<empty>"


@dataclass(frozen=True)
class Completion:
    """Captured result of a child that exited with status 0."""

    returncode: int
    stdout: bytes
    stderr: bytes
    elapsed: float


async def supervise(invocation: Invocation) -> Completion:
    """Run ``invocation`` to completion under its deadline.

    Raises:
        InvocationError: The child could not be started or exited non-zero.
        ExternalTimeoutError: The deadline passed; the child was killed.
        asyncio.CancelledError: The caller was cancelled; the child was killed.
    """
    name = invocation.name
    if not invocation.argv:
        msg = "no command given"
        raise InvocationError(msg, command=name)

    log.debug("Running: %s (timeout %ss)", " ".join(invocation.argv), invocation.timeout)
    start = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *invocation.argv,
            stdin=asyncio.subprocess.PIPE
            if invocation.stdin is not None
            else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=invocation.env,
            cwd=invocation.cwd,
            start_new_session=_POSIX,
        )
    except OSError as exc:
        msg = f"executing {name} failed: {exc}"
        raise InvocationError(msg, command=name) from exc

    stdout = bytearray()
    stderr = bytearray()
    io_tasks = {
        asyncio.create_task(_feed(proc, invocation.stdin, name)),
        asyncio.create_task(_drain(proc.stdout, stdout)),
        asyncio.create_task(_drain(proc.stderr, stderr)),
    }

    try:
        await asyncio.wait_for(_exited(proc), timeout=invocation.timeout)
    except TimeoutError:
        await _kill(proc)
        await _settle(io_tasks)
        elapsed = time.perf_counter() - start
        msg = f"executing {name} timed out after {invocation.timeout}s (elapsed {elapsed:.2f}s)"
        log.error(msg)
        raise ExternalTimeoutError(msg, command=name, timeout=invocation.timeout) from None
    except asyncio.CancelledError:
        log.warning("Cancelled while waiting for %s; killing pid %s", name, proc.pid)
        await _kill(proc)
        await _settle(io_tasks)
        raise

    # The child has exited; anything it left behind may still hold the pipes open.
    done, pending = await asyncio.wait(io_tasks, timeout=_PIPE_GRACE)
    for task in done:
        task.result()
    if pending:
        log.warning(
            "%s exited but left processes holding its output open; killing process group %s",
            name,
            proc.pid,
        )
        await _kill(proc)
        await _settle(pending)

    elapsed = time.perf_counter() - start
    stdout_bytes = bytes(stdout)
    stderr_bytes = bytes(stderr)
    _log_output(name, stdout_bytes, stderr_bytes, log_stdout=invocation.log_stdout)

    returncode = proc.returncode if proc.returncode is not None else 0
    if returncode != 0:
        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
        tail = stderr_text[-_STDERR_TAIL:] if stderr_text else "(no stderr)"
        msg = f"executing {name} failed: exit status {returncode}: {tail}"
        raise InvocationError(msg, command=name, returncode=returncode, stderr=stderr_text)

    log.debug("%s finished in %.3fs", name, elapsed)
    return Completion(
        returncode=returncode, stdout=stdout_bytes, stderr=stderr_bytes, elapsed=elapsed
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    # The session's process group can outlive its leader, so signal it even
    # when the leader has already exited.
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except ProcessLookupError:
        pass
    await _exited(proc)


async def _feed(proc: asyncio.subprocess.Process, data: bytes | None, name: str) -> None:
    if data is None or proc.stdin is None:
        return
    try:
        proc.stdin.write(data)
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        log.debug("%s closed its standard input before reading the request", name)
    proc.stdin.close()


async def _drain(stream: asyncio.StreamReader | None, sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.extend(chunk)


async def _settle(tasks: set[asyncio.Task[None]]) -> None:
    """Give pipe tasks a moment to finish, then cancel whatever is left."""
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=_PIPE_GRACE)
    for task in pending:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _log_output(name: str, stdout: bytes, stderr: bytes, *, log_stdout: bool) -> None:
    for line in stderr.decode("utf-8", errors="replace").splitlines():
        if line.strip():
            log.error("%s: %s", name, line)
    if not log_stdout:
        return
    for line in stdout.decode("utf-8", errors="replace").splitlines():
        if line.strip():
            log.info("%s: %s", name, line)


async def _exited(proc: asyncio.subprocess.Process) -> int:
    """Wait for the child itself to exit and be reaped, ignoring its pipes."""
    while proc.returncode is None:
        await asyncio.sleep(_EXIT_POLL)
    return proc.returncode
