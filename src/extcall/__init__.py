"""extcall: delegate discovery and provisioning decisions to external programs."""

from __future__ import annotations

from extcall.discovery import ExternalDiscovery
from extcall.errors import (
    ConfigError,
    ExternalCallError,
    ExternalTimeoutError,
    InvocationError,
    NoReplyError,
    SchemaError,
)
from extcall.models import (
    DiscoveryResult,
    FactFilter,
    Filter,
    ProvisioningOutcome,
    ProvisioningRequest,
    ProvisioningStatus,
)
from extcall.provisioning import ProvisioningHelper

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "DiscoveryResult",
    "ExternalCallError",
    "ExternalDiscovery",
    "ExternalTimeoutError",
    "FactFilter",
    "Filter",
    "InvocationError",
    "NoReplyError",
    "ProvisioningHelper",
    "ProvisioningOutcome",
    "ProvisioningRequest",
    "ProvisioningStatus",
    "SchemaError",
    "__version__",
]
