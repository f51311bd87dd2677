"""Provisioning decisions delegated to an external helper program.

The helper always speaks over standard input and output.  A deferred
reply is an explicit "not yet" and the caller should retry later; a
failed outcome means the helper broke the protocol.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import tempfile

from extcall.codec import encode_provisioning_request
from extcall.config import ProvisioningConfig
from extcall.errors import ExternalCallError, InvocationError
from extcall.models import (
    ProvisioningOutcome,
    ProvisioningReply,
    ProvisioningRequest,
    ProvisioningStatus,
)
from extcall.projector import project_provisioning
from extcall.supervisor import supervise
from extcall.transports import StdioTransport
from extcall.validator import validate_provisioning_reply

__all__ = ["ProvisioningHelper"]

log = logging.getLogger(__name__)

# The provisioning contract has no protocol identifier of its own.
_PROTOCOL = ""


class ProvisioningHelper:
    """Run the configured helper once per node being provisioned."""

    def __init__(self, config: ProvisioningConfig | None = None) -> None:
        self._config = config or ProvisioningConfig()
        self._transport = StdioTransport(extra_env=dict(self._config.environment))

    async def provision(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        command = self._config.command
        if not command:
            return project_provisioning(InvocationError("no provisioning helper configured"))

        try:
            reply = await self._invoke(_split_command(command), request)
        except ExternalCallError as exc:
            log.error("Provisioning helper failed for %s: %s", request.identity, exc)
            return project_provisioning(exc)

        outcome = project_provisioning(reply)
        if outcome.status == ProvisioningStatus.DEFERRED:
            log.info("Provisioning of %s deferred: %s", request.identity, outcome.message)
        elif outcome.status == ProvisioningStatus.FAILED:
            log.error("Provisioning of %s failed: %s", request.identity, outcome.message)
        return outcome

    def provision_sync(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        """Blocking wrapper around ``provision()``."""
        return asyncio.run(self.provision(request))

    async def _invoke(self, argv: list[str], request: ProvisioningRequest) -> ProvisioningReply:
        payload = encode_provisioning_request(request)
        with self._transport.open(argv, payload, _PROTOCOL) as channel:
            invocation = channel.invocation(self._config.timeout, cwd=tempfile.gettempdir())
            completion = await supervise(invocation)
            raw = channel.read_reply(completion)
        return validate_provisioning_reply(raw, command=invocation.name)


def _split_command(command: str) -> list[str]:
    try:
        parts = shlex.split(command)
    except ValueError as exc:
        msg = f"could not parse helper command {command!r}: {exc}"
        raise InvocationError(msg) from exc
    if not parts:
        msg = "no provisioning helper configured"
        raise InvocationError(msg)
    return parts
