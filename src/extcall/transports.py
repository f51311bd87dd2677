"""Transports that carry one request/reply pair to and from a child process.

Each transport opens a private ``Channel`` for exactly one invocation.
Leaving the ``open()`` context removes any temporary files it created,
whatever happened to the child.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from extcall.errors import NoReplyError
from extcall.supervisor import Completion, Invocation

__all__ = [
    "ENV_PROTOCOL",
    "ENV_REPLY",
    "ENV_REQUEST",
    "ArgvTransport",
    "Channel",
    "EnvFileTransport",
    "StdioTransport",
    "Transport",
    "create_transport",
    "resolve_transport_name",
]

ENV_REQUEST = "CHORIA_EXTERNAL_REQUEST"
ENV_REPLY = "CHORIA_EXTERNAL_REPLY"
ENV_PROTOCOL = "CHORIA_EXTERNAL_PROTOCOL"

_TRANSPORT_NAMES = ("env", "argv", "stdio")
_ENV_VAR = "EXTCALL_DISCOVERY_TRANSPORT"
_DEFAULT_TRANSPORT = "env"

_REQUEST_FILE = "request.json"
_REPLY_FILE = "reply.json"


@dataclass(frozen=True)
class Channel:
    """The per-invocation view of a transport."""

    argv: list[str]
    env: dict[str, str]
    read_reply: Callable[[Completion], bytes]
    stdin: bytes | None = None
    log_stdout: bool = True

    def invocation(self, timeout: float, *, cwd: str | None = None) -> Invocation:
        return Invocation(
            argv=list(self.argv),
            timeout=timeout,
            env=dict(self.env),
            stdin=self.stdin,
            cwd=cwd,
            log_stdout=self.log_stdout,
        )


@runtime_checkable
class Transport(Protocol):
    """Calling convention used to exchange a request and reply with a child."""

    name: str

    def open(
        self,
        command: Sequence[str],
        payload: bytes,
        protocol: str,
    ) -> AbstractContextManager[Channel]:
        """Prepare a private channel for one invocation of ``command``."""
        ...


@dataclass(frozen=True)
class EnvFileTransport:
    """Request and reply files named by environment variables.

    The child is spawned with no extra arguments.
    """

    extra_env: dict[str, str] = field(default_factory=dict)
    name: str = "env"

    @contextmanager
    def open(self, command: Sequence[str], payload: bytes, protocol: str) -> Iterator[Channel]:
        with _request_files(payload) as (request_path, reply_path):
            env = _child_env(self.extra_env)
            env[ENV_REQUEST] = str(request_path)
            env[ENV_REPLY] = str(reply_path)
            env[ENV_PROTOCOL] = protocol
            yield Channel(
                argv=list(command),
                env=env,
                read_reply=lambda _completion: _read_reply_file(reply_path, command),
            )


@dataclass(frozen=True)
class ArgvTransport:
    """Request and reply file paths passed as fixed positional arguments.

    The child sees ``<verb> <mode-flag> <request> <reply> <protocol>`` after
    the configured command.
    """

    verb: str = "discover"
    mode_flag: str = "--test"
    extra_env: dict[str, str] = field(default_factory=dict)
    name: str = "argv"

    @contextmanager
    def open(self, command: Sequence[str], payload: bytes, protocol: str) -> Iterator[Channel]:
        with _request_files(payload) as (request_path, reply_path):
            argv = [*command, self.verb, self.mode_flag, str(request_path), str(reply_path), protocol]
            yield Channel(
                argv=argv,
                env=_child_env(self.extra_env),
                read_reply=lambda _completion: _read_reply_file(reply_path, command),
            )


@dataclass(frozen=True)
class StdioTransport:
    """Request on the child's standard input, reply on its standard output."""

    extra_env: dict[str, str] = field(default_factory=dict)
    name: str = "stdio"

    @contextmanager
    def open(self, command: Sequence[str], payload: bytes, protocol: str) -> Iterator[Channel]:
        def read_reply(completion: Completion) -> bytes:
            if not completion.stdout.strip():
                msg = f"{_command_name(command)} wrote no reply to standard output"
                raise NoReplyError(msg, command=_command_name(command))
            return completion.stdout

        yield Channel(
            argv=list(command),
            env=_child_env(self.extra_env),
            read_reply=read_reply,
            stdin=payload,
            log_stdout=False,
        )


def resolve_transport_name(value: str | None = None) -> str:
    """Return the effective transport name after applying precedence rules."""
    name = value or os.environ.get(_ENV_VAR) or _DEFAULT_TRANSPORT
    name = name.strip().lower()
    if name not in _TRANSPORT_NAMES:
        msg = f"Unknown transport '{name}'. Available transports: {', '.join(_TRANSPORT_NAMES)}"
        raise ValueError(msg)
    return name


def create_transport(
    name: str,
    *,
    extra_env: dict[str, str] | None = None,
) -> EnvFileTransport | ArgvTransport | StdioTransport:
    """Instantiate a transport by its registered name."""
    env = dict(extra_env or {})
    if name == "env":
        return EnvFileTransport(extra_env=env)
    if name == "argv":
        return ArgvTransport(extra_env=env)
    if name == "stdio":
        return StdioTransport(extra_env=env)
    msg = f"Unknown transport: {name}"
    raise ValueError(msg)


@contextmanager
def _request_files(payload: bytes) -> Iterator[tuple[Path, Path]]:
    # mkdtemp creates the directory with mode 0700.
    with tempfile.TemporaryDirectory(prefix="extcall-") as workdir:
        request_path = Path(workdir) / _REQUEST_FILE
        reply_path = Path(workdir) / _REPLY_FILE
        request_path.write_bytes(payload)
        yield request_path, reply_path


def _read_reply_file(path: Path, command: Sequence[str]) -> bytes:
    name = _command_name(command)
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        msg = f"{name} did not write a reply file"
        raise NoReplyError(msg, command=name) from None
    if not data.strip():
        msg = f"{name} wrote an empty reply file"
        raise NoReplyError(msg, command=name)
    return data


def _child_env(extra: dict[str, str]) -> dict[str, str]:
    env = {"PATH": os.environ.get("PATH", os.defpath)}
    env.update(extra)
    return env


def _command_name(command: Sequence[str]) -> str:
    return os.path.basename(command[0]) if command else "<empty>"
