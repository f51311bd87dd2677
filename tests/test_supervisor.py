"""Tests for child process supervision.

Children are real Python scripts so timeouts and kills are exercised for real.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from extcall.errors import ExternalTimeoutError, InvocationError
from extcall.supervisor import Invocation, supervise

if TYPE_CHECKING:
    from conftest import ScriptWriter

pytestmark = pytest.mark.skipif(os.name != "posix", reason="needs POSIX process groups")

_PATH_ENV = {"PATH": os.environ.get("PATH", os.defpath)}


def _invocation(script: Path, timeout: float = 5, **kwargs: object) -> Invocation:
    return Invocation(argv=[str(script)], timeout=timeout, env=dict(_PATH_ENV), **kwargs)  # type: ignore[arg-type]


# -- Success ---------------------------------------------------------------


class TestSuccess:
    @pytest.mark.asyncio
    async def test_captures_output(self, script: ScriptWriter) -> None:
        child = script(
            "echo",
            """
            import sys
            sys.stdout.write("hello\\n")
            sys.stderr.write("warning\\n")
            """,
        )
        completion = await supervise(_invocation(child))
        assert completion.returncode == 0
        assert completion.stdout == b"hello\n"
        assert completion.stderr == b"warning\n"
        assert completion.elapsed >= 0

    @pytest.mark.asyncio
    async def test_stdin_is_delivered(self, script: ScriptWriter) -> None:
        child = script(
            "cat",
            """
            import sys
            sys.stdout.write(sys.stdin.read().upper())
            """,
        )
        completion = await supervise(_invocation(child, stdin=b"payload"))
        assert completion.stdout == b"PAYLOAD"

    @pytest.mark.asyncio
    async def test_env_and_cwd(self, script: ScriptWriter, tmp_path: Path) -> None:
        child = script(
            "env",
            """
            import os
            print(os.environ.get("EXTCALL_TEST", ""), os.getcwd())
            """,
        )
        invocation = Invocation(
            argv=[str(child)],
            timeout=5,
            env={**_PATH_ENV, "EXTCALL_TEST": "yes"},
            cwd=str(tmp_path),
        )
        completion = await supervise(invocation)
        value, cwd = completion.stdout.decode().split()
        assert value == "yes"
        assert Path(cwd).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_logs_child_output(
        self, script: ScriptWriter, caplog: pytest.LogCaptureFixture
    ) -> None:
        child = script(
            "chatty",
            """
            import sys
            print("from stdout")
            print("from stderr", file=sys.stderr)
            """,
        )
        with caplog.at_level(logging.INFO, logger="extcall.supervisor"):
            await supervise(_invocation(child))
        messages = [(record.levelno, record.getMessage()) for record in caplog.records]
        assert (logging.INFO, "chatty: from stdout") in messages
        assert (logging.ERROR, "chatty: from stderr") in messages

    @pytest.mark.asyncio
    async def test_stdout_not_logged_when_disabled(
        self, script: ScriptWriter, caplog: pytest.LogCaptureFixture
    ) -> None:
        child = script("quiet", 'print("secret reply")\n')
        with caplog.at_level(logging.INFO, logger="extcall.supervisor"):
            await supervise(_invocation(child, log_stdout=False))
        assert "secret reply" not in caplog.text


# -- Failures --------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_non_zero_exit(self, script: ScriptWriter) -> None:
        child = script(
            "broken",
            """
            import sys
            print("partial output")
            sys.stderr.write("something broke\\n")
            sys.exit(3)
            """,
        )
        with pytest.raises(InvocationError) as excinfo:
            await supervise(_invocation(child))
        exc = excinfo.value
        assert exc.returncode == 3
        assert exc.command == "broken"
        assert "exit status 3" in str(exc)
        assert "something broke" in str(exc)

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_stderr(self, script: ScriptWriter) -> None:
        child = script("silent", "raise SystemExit(1)\n")
        with pytest.raises(InvocationError, match=r"\(no stderr\)"):
            await supervise(_invocation(child))

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path) -> None:
        invocation = Invocation(argv=[str(tmp_path / "nope")], timeout=5, env=dict(_PATH_ENV))
        with pytest.raises(InvocationError, match="executing nope failed"):
            await supervise(invocation)

    @pytest.mark.asyncio
    async def test_not_executable(self, tmp_path: Path) -> None:
        path = tmp_path / "plain.txt"
        path.write_text("data", encoding="utf-8")
        with pytest.raises(InvocationError):
            await supervise(Invocation(argv=[str(path)], timeout=5, env=dict(_PATH_ENV)))

    @pytest.mark.asyncio
    async def test_empty_argv(self) -> None:
        with pytest.raises(InvocationError, match="no command given"):
            await supervise(Invocation(argv=[], timeout=5))


# -- Deadlines and cancellation --------------------------------------------


class TestDeadlines:
    @pytest.mark.asyncio
    async def test_timeout_kills_child_promptly(self, script: ScriptWriter) -> None:
        child = script(
            "sleeper",
            """
            import time
            time.sleep(30)
            """,
        )
        start = time.monotonic()
        with pytest.raises(ExternalTimeoutError) as excinfo:
            await supervise(_invocation(child, timeout=0.5))
        elapsed = time.monotonic() - start
        assert elapsed < 5
        assert excinfo.value.timeout == 0.5
        assert isinstance(excinfo.value, TimeoutError)
        assert "timed out after 0.5s" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_timeout_kills_grandchildren(self, script: ScriptWriter, tmp_path: Path) -> None:
        marker = tmp_path / "grandchild-survived"
        child = script(
            "spawner",
            f"""
            import subprocess, sys, time
            subprocess.Popen([
                sys.executable,
                "-c",
                "import time; time.sleep(1.5); open({str(marker)!r}, 'w').close()",
            ])
            time.sleep(30)
            """,
        )
        with pytest.raises(ExternalTimeoutError):
            await supervise(_invocation(child, timeout=0.5))
        await asyncio.sleep(2)
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_cancellation_kills_child(self, script: ScriptWriter, tmp_path: Path) -> None:
        pid_file = tmp_path / "child.pid"
        child = script(
            "waiter",
            f"""
            import os, time
            with open({str(pid_file)!r}, "w") as handle:
                handle.write(str(os.getpid()))
            time.sleep(30)
            """,
        )
        task = asyncio.create_task(supervise(_invocation(child, timeout=30)))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_reply_kept_when_descendant_holds_output(
        self, script: ScriptWriter, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        marker = tmp_path / "background-survived"
        child = script(
            "forker",
            f"""
            import subprocess, sys
            subprocess.Popen([
                sys.executable,
                "-c",
                "import time; time.sleep(2); open({str(marker)!r}, 'w').close()",
            ])
            print("reply", flush=True)
            """,
        )
        start = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="extcall.supervisor"):
            completion = await supervise(_invocation(child, timeout=5))
        assert time.monotonic() - start < 1.8
        assert completion.returncode == 0
        assert completion.stdout == b"reply\n"
        assert "left processes holding its output open" in caplog.text

        await asyncio.sleep(max(0.0, 2.5 - (time.monotonic() - start)))
        assert not marker.exists()
