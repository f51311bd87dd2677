"""Reply validation.

Checks run in order: the payload must be valid JSON, exactly one reply
variant must be present, and for discovery the protocol must match the
expected reply identifier.  Every failure is a ``SchemaError`` that keeps
and quotes the raw payload.
"""

from __future__ import annotations

from extcall.codec import decode_discovery_reply, decode_provisioning_reply
from extcall.errors import SchemaError
from extcall.models import DISCOVERY_REPLY_PROTOCOL, DiscoveryReply, ProvisioningReply

__all__ = ["validate_discovery_reply", "validate_provisioning_reply"]


def validate_discovery_reply(
    raw: bytes,
    expected_protocol: str = DISCOVERY_REPLY_PROTOCOL,
    *,
    command: str | None = None,
) -> DiscoveryReply:
    try:
        reply = decode_discovery_reply(raw)
    except SchemaError as exc:
        exc.command = command
        raise

    if reply.is_error:
        return reply

    if reply.protocol != expected_protocol:
        raise SchemaError(
            [
                "invalid response received, expected protocol "
                f"{expected_protocol!r} got {reply.protocol!r}"
            ],
            payload=raw,
            command=command,
        )
    return reply


def validate_provisioning_reply(raw: bytes, *, command: str | None = None) -> ProvisioningReply:
    try:
        return decode_provisioning_reply(raw)
    except SchemaError as exc:
        exc.command = command
        raise
