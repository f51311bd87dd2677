"""Node discovery through an external provider program."""

from __future__ import annotations

import asyncio
import logging
import math
import shlex
import tempfile

from extcall.codec import encode_discovery_request
from extcall.config import DiscoveryConfig
from extcall.errors import ExternalCallError, InvocationError
from extcall.models import (
    DISCOVERY_REPLY_PROTOCOL,
    DISCOVERY_REQUEST_PROTOCOL,
    DiscoveryReply,
    DiscoveryRequest,
    DiscoveryResult,
    Filter,
)
from extcall.projector import project_discovery
from extcall.supervisor import supervise
from extcall.transports import Transport, create_transport
from extcall.validator import validate_discovery_reply

__all__ = ["ExternalDiscovery"]

log = logging.getLogger(__name__)

_MIN_TIMEOUT = 1
_COMMAND_OPTION = "command"


class ExternalDiscovery:
    """Resolve filters into node identities by running an external program.

    Every call is independent: it gets its own request, its own channel
    and its own child process.  Calls may run concurrently.
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        *,
        transport: Transport | None = None,
    ) -> None:
        self._config = config or DiscoveryConfig()
        self._transport = transport or create_transport(
            self._config.transport, extra_env=self._config.environment
        )

    @property
    def transport(self) -> Transport:
        return self._transport

    async def discover(
        self,
        flt: Filter | None = None,
        *,
        collective: str | None = None,
        timeout: float | None = None,
        options: dict[str, str] | None = None,
        federations: list[str] | None = None,
    ) -> DiscoveryResult:
        """Run the provider once and return its nodes or a single error.

        ``options["command"]`` overrides the configured command and is not
        forwarded to the provider.
        """
        opts = dict(options or {})
        command = opts.pop(_COMMAND_OPTION, "") or self._config.command
        if not command:
            return project_discovery(
                InvocationError("no command specified for external discovery")
            )

        try:
            request = DiscoveryRequest(
                filter=flt or Filter(),
                collective=collective or self._config.collective,
                timeout=self._effective_timeout(timeout),
                options=opts,
                federations=list(federations) if federations is not None else None,
            )
            argv = _split_command(command)
            result = project_discovery(await self._invoke(argv, request))
        except ExternalCallError as exc:
            log.error("External discovery failed: %s", exc)
            return project_discovery(exc)

        log.debug("External discovery found %d nodes", len(result.nodes))
        return result

    def discover_sync(
        self,
        flt: Filter | None = None,
        *,
        collective: str | None = None,
        timeout: float | None = None,
        options: dict[str, str] | None = None,
        federations: list[str] | None = None,
    ) -> DiscoveryResult:
        """Blocking wrapper around ``discover()`` for callers without a loop."""
        return asyncio.run(
            self.discover(
                flt,
                collective=collective,
                timeout=timeout,
                options=options,
                federations=federations,
            )
        )

    async def _invoke(self, argv: list[str], request: DiscoveryRequest) -> DiscoveryReply:
        payload = encode_discovery_request(request)
        with self._transport.open(argv, payload, DISCOVERY_REQUEST_PROTOCOL) as channel:
            invocation = channel.invocation(request.timeout, cwd=tempfile.gettempdir())
            completion = await supervise(invocation)
            raw = channel.read_reply(completion)
        return validate_discovery_reply(raw, DISCOVERY_REPLY_PROTOCOL, command=invocation.name)

    def _effective_timeout(self, timeout: float | None) -> int:
        value = self._config.timeout if timeout is None else timeout
        if not math.isfinite(value):
            msg = f"discovery timeout must be a finite number of seconds, got {value}"
            raise InvocationError(msg)
        if value < _MIN_TIMEOUT:
            log.warning("Forcing discovery timeout to minimum %d second", _MIN_TIMEOUT)
            return _MIN_TIMEOUT
        return math.ceil(value)


def _split_command(command: str) -> list[str]:
    try:
        parts = shlex.split(command)
    except ValueError as exc:
        msg = f"could not parse discovery command {command!r}: {exc}"
        raise InvocationError(msg) from exc
    if not parts:
        msg = "no command specified for external discovery"
        raise InvocationError(msg)
    return parts
