"""Core data models for extcall.

This module defines the typed dataclasses and enumerations exchanged with
external programs:

- **Discovery**: FactFilter, Filter, DiscoveryRequest, DiscoveryReply
- **Provisioning**: Ed25519PubKey, ProvisioningRequest, ProvisioningReply
- **Outcomes**: DiscoveryResult, ProvisioningStatus, ProvisioningOutcome
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from extcall.errors import ExternalCallError

# ---------------------------------------------------------------------------
# Protocol identifiers
# ---------------------------------------------------------------------------

DISCOVERY_REQUEST_PROTOCOL = "io.choria.choria.discovery.v1.external_request"
DISCOVERY_REPLY_PROTOCOL = "io.choria.choria.discovery.v1.external_reply"
DISCOVERY_REQUEST_SCHEMA = (
    "https://choria.io/schemas/choria/discovery/v1/external_request.json"
)

# Marker a provisioning helper puts at the start of ``msg`` when it is finished.
PROVISIONING_DONE_MARKER = "Done"


# ---------------------------------------------------------------------------
# Discovery models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FactFilter:
    """A single ``fact operator value`` comparison."""

    fact: str
    operator: str
    value: str


@dataclass(frozen=True)
class Filter:
    """Structured query describing the target nodes.

    Every field is always present on the wire, even when empty.  The
    ``compound`` entries are usually expression strings; the older
    list-of-mappings shape is carried through untouched.
    """

    fact: list[FactFilter] = field(default_factory=list)
    cf_class: list[str] = field(default_factory=list)
    agent: list[str] = field(default_factory=list)
    compound: list[Any] = field(default_factory=list)
    identity: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.fact or self.cf_class or self.agent or self.compound or self.identity)


@dataclass(frozen=True)
class DiscoveryRequest:
    """Request handed to a discovery provider."""

    filter: Filter
    collective: str
    timeout: int
    protocol: str = DISCOVERY_REQUEST_PROTOCOL
    schema: str = DISCOVERY_REQUEST_SCHEMA
    federations: list[str] | None = None
    options: dict[str, str] | None = None


@dataclass(frozen=True)
class DiscoveryReply:
    """Reply from a discovery provider.

    Exactly one variant is populated: ``error`` for failures, or
    ``protocol`` together with ``nodes`` for success.
    """

    protocol: str | None = None
    nodes: list[str] | None = None
    error: str | None = None

    @classmethod
    def success(cls, nodes: list[str]) -> DiscoveryReply:
        return cls(protocol=DISCOVERY_REPLY_PROTOCOL, nodes=list(nodes))

    @classmethod
    def failure(cls, error: str) -> DiscoveryReply:
        return cls(error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None


# ---------------------------------------------------------------------------
# Provisioning models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ed25519PubKey:
    """Ed25519 key material reported by a node being provisioned.

    Keys other than ``directory`` are preserved in ``extra``.
    """

    directory: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisioningRequest:
    """Request handed to a provisioning helper."""

    identity: str
    ed25519_pubkey: Ed25519PubKey
    inventory: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisioningReply:
    """Reply from a provisioning helper.

    ``defer=True`` means "not ready, try again later" and is never a hard
    failure.
    """

    defer: bool
    msg: str
    certificate: str = ""
    ca: str = ""
    configuration: dict[str, str] = field(default_factory=dict)
    server_claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def deferred(cls, msg: str) -> ProvisioningReply:
        return cls(defer=True, msg=msg)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of one discovery invocation.

    Discovery never partially succeeds: either ``nodes`` holds the full
    ordered list (possibly empty) or ``error`` holds a message and
    ``nodes`` is empty.
    """

    nodes: list[str] = field(default_factory=list)
    error: str | None = None
    cause: ExternalCallError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProvisioningStatus(enum.Enum):
    """How the orchestrator should treat a provisioning outcome."""

    DONE = "done"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class ProvisioningOutcome:
    """Outcome of one provisioning invocation."""

    status: ProvisioningStatus
    message: str
    certificate: str = ""
    ca: str = ""
    configuration: dict[str, str] = field(default_factory=dict)
    server_claims: dict[str, Any] = field(default_factory=dict)
    cause: ExternalCallError | None = None

    @property
    def should_retry(self) -> bool:
        return self.status == ProvisioningStatus.DEFERRED


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

__all__ = [
    "DISCOVERY_REPLY_PROTOCOL",
    "DISCOVERY_REQUEST_PROTOCOL",
    "DISCOVERY_REQUEST_SCHEMA",
    "PROVISIONING_DONE_MARKER",
    "DiscoveryReply",
    "DiscoveryRequest",
    "DiscoveryResult",
    "Ed25519PubKey",
    "FactFilter",
    "Filter",
    "ProvisioningOutcome",
    "ProvisioningReply",
    "ProvisioningRequest",
    "ProvisioningStatus",
]
