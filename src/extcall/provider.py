"""Helpers for writing the external side of the protocol in Python.

A discovery provider script is typically::

    import sys
    from extcall.provider import StaticDiscoveryProvider, run_discovery_provider

    sys.exit(run_discovery_provider(StaticDiscoveryProvider(expected, ["one", "two"])))

and a provisioning helper::

    sys.exit(run_provisioning_helper(decide))

Both runners own the boundary contract: protocol mismatches and handler
failures are turned into the documented error reply shapes instead of
escaping as a crash.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from extcall.codec import (
    decode_discovery_request,
    decode_provisioning_request,
    encode_discovery_reply,
    encode_filter,
    encode_provisioning_reply,
)
from extcall.models import (
    DISCOVERY_REQUEST_PROTOCOL,
    DiscoveryReply,
    DiscoveryRequest,
    Filter,
    ProvisioningReply,
    ProvisioningRequest,
)
from extcall.transports import ENV_PROTOCOL, ENV_REPLY, ENV_REQUEST

__all__ = [
    "INVALID_PROTOCOL_MESSAGE",
    "MISSING_DIRECTORY_MESSAGE",
    "InvalidProtocol",
    "ProviderError",
    "ProviderUsageError",
    "RequestLocation",
    "StaticDiscoveryProvider",
    "locate_discovery_request",
    "read_discovery_request",
    "run_discovery_provider",
    "run_provisioning_helper",
]

log = logging.getLogger(__name__)

INVALID_PROTOCOL_MESSAGE = "invalid protocol"
# Wording is part of the helper contract and kept as deployed.
MISSING_DIRECTORY_MESSAGE = "No ed15519 directory received"

DiscoveryHandler = Callable[[DiscoveryRequest], Sequence[str]]
ProvisioningHandler = Callable[[ProvisioningRequest], ProvisioningReply]


class ProviderError(Exception):
    """Raised by a discovery handler to reply with the error variant."""


class InvalidProtocol(ProviderError):
    """The request did not carry the expected protocol identifier."""


class ProviderUsageError(Exception):
    """The provider was started with arguments it does not understand."""


@dataclass(frozen=True)
class RequestLocation:
    """Where a discovery request and its reply live for one invocation."""

    request: Path | None
    reply: Path | None
    protocol: str | None


def locate_discovery_request(
    argv: Sequence[str],
    environ: Mapping[str, str],
    *,
    verb: str = "discover",
) -> RequestLocation:
    """Work out where the request lives from the calling convention.

    Environment variables win; otherwise ``argv`` must be exactly
    ``<verb> <mode-flag> <request> <reply> <protocol>``; an empty ``argv``
    means the request arrives on standard input.
    """
    if environ.get(ENV_REQUEST):
        reply = environ.get(ENV_REPLY)
        if not reply:
            msg = f"{ENV_REQUEST} is set but {ENV_REPLY} is not"
            raise ProviderUsageError(msg)
        return RequestLocation(
            request=Path(environ[ENV_REQUEST]),
            reply=Path(reply),
            protocol=environ.get(ENV_PROTOCOL),
        )

    if not argv:
        return RequestLocation(request=None, reply=None, protocol=None)

    if len(argv) != 5:
        msg = f"expected 5 arguments (<verb> <mode> <request> <reply> <protocol>), got {len(argv)}"
        raise ProviderUsageError(msg)
    if argv[0] != verb:
        msg = f"unknown verb {argv[0]!r}, expected {verb!r}"
        raise ProviderUsageError(msg)
    if not argv[1].startswith("--"):
        msg = f"invalid mode flag {argv[1]!r}"
        raise ProviderUsageError(msg)
    return RequestLocation(request=Path(argv[2]), reply=Path(argv[3]), protocol=argv[4])


def read_discovery_request(
    raw: bytes | str,
    *,
    protocol: str | None = None,
    expected_protocol: str = DISCOVERY_REQUEST_PROTOCOL,
) -> DiscoveryRequest:
    """Decode a discovery request after checking its protocol.

    The protocol is checked before anything else in the request is looked
    at, so a request for another protocol never has its filter parsed.
    """
    if protocol is not None and protocol != expected_protocol:
        raise InvalidProtocol(INVALID_PROTOCOL_MESSAGE)
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        msg = f"could not parse request: {exc}"
        raise ProviderError(msg) from exc
    if not isinstance(data, dict) or data.get("protocol") != expected_protocol:
        raise InvalidProtocol(INVALID_PROTOCOL_MESSAGE)
    return decode_discovery_request(raw)


def run_discovery_provider(
    handler: DiscoveryHandler,
    *,
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
    verb: str = "discover",
) -> int:
    """Serve one discovery request and return the process exit code.

    Usage errors exit 1 without writing a reply.  Everything else,
    including handler failures, produces a reply and exits 0.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    env = os.environ if environ is None else environ

    try:
        location = locate_discovery_request(args, env, verb=verb)
    except ProviderUsageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if location.request is None:
        raw = (stdin or sys.stdin).read()
    else:
        raw = location.request.read_text(encoding="utf-8")

    reply = _discovery_reply(handler, raw, location.protocol)
    encoded = encode_discovery_reply(reply)
    if location.reply is None:
        out = stdout or sys.stdout
        out.write(encoded.decode("utf-8"))
        out.flush()
    else:
        location.reply.write_bytes(encoded)
    return 0


def _discovery_reply(handler: DiscoveryHandler, raw: str, protocol: str | None) -> DiscoveryReply:
    try:
        request = read_discovery_request(raw, protocol=protocol)
        nodes = handler(request)
    except ProviderError as exc:
        return DiscoveryReply.failure(str(exc))
    except Exception as exc:
        log.exception("Discovery handler failed")
        return DiscoveryReply.failure(f"{type(exc).__name__}: {exc}")
    return DiscoveryReply.success(list(nodes))


class StaticDiscoveryProvider:
    """Reference provider that answers exactly one filter with fixed nodes."""

    def __init__(self, expected: Filter, nodes: Sequence[str]) -> None:
        self._expected = expected
        self._nodes = list(nodes)

    def __call__(self, request: DiscoveryRequest) -> list[str]:
        if not _same_filter(self._expected, request.filter):
            expected = json.dumps(encode_filter(self._expected), sort_keys=True)
            received = json.dumps(encode_filter(request.filter), sort_keys=True)
            msg = f"filter mismatch: expected {expected} received {received}"
            raise ProviderError(msg)
        return list(self._nodes)


def _same_filter(expected: Filter, received: Filter) -> bool:
    # Classes, agents and identities are sets; facts and compound keep their order.
    return (
        expected.fact == received.fact
        and expected.compound == received.compound
        and set(expected.cf_class) == set(received.cf_class)
        and set(expected.agent) == set(received.agent)
        and set(expected.identity) == set(received.identity)
    )


def run_provisioning_helper(
    handler: ProvisioningHandler,
    *,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> int:
    """Serve one provisioning request over stdio and return the exit code.

    Any failure, including an unreadable request, becomes a deferred reply
    naming the exception class and text.  The helper never crashes with a
    bare non-zero exit once it has started.
    """
    raw = (stdin or sys.stdin).read()
    try:
        request = decode_provisioning_request(raw)
        if not request.ed25519_pubkey.directory:
            reply = ProvisioningReply.deferred(MISSING_DIRECTORY_MESSAGE)
        else:
            reply = handler(request)
    except Exception as exc:
        log.exception("Provisioning handler failed")
        reply = ProvisioningReply.deferred(f"{type(exc).__name__}: {exc}")

    out = stdout or sys.stdout
    out.write(encode_provisioning_reply(reply).decode("utf-8"))
    out.flush()
    return 0
