"""Map validated replies, or failures, onto the orchestrator's result types."""

from __future__ import annotations

from extcall.errors import ExternalCallError
from extcall.models import (
    PROVISIONING_DONE_MARKER,
    DiscoveryReply,
    DiscoveryResult,
    ProvisioningOutcome,
    ProvisioningReply,
    ProvisioningStatus,
)

__all__ = ["project_discovery", "project_provisioning"]


def project_discovery(outcome: DiscoveryReply | ExternalCallError) -> DiscoveryResult:
    """Discovery either yields the full node list or a single error message."""
    if isinstance(outcome, ExternalCallError):
        return DiscoveryResult(error=str(outcome), cause=outcome)
    if outcome.error is not None:
        return DiscoveryResult(error=outcome.error)
    return DiscoveryResult(nodes=list(outcome.nodes or []))


def project_provisioning(outcome: ProvisioningReply | ExternalCallError) -> ProvisioningOutcome:
    """Classify a provisioning reply as done, deferred or failed.

    Only a ``DONE`` outcome carries configuration, claims and certificates.
    """
    if isinstance(outcome, ExternalCallError):
        return ProvisioningOutcome(
            status=ProvisioningStatus.FAILED,
            message=str(outcome),
            cause=outcome,
        )

    if outcome.defer:
        return ProvisioningOutcome(status=ProvisioningStatus.DEFERRED, message=outcome.msg)

    if outcome.msg.startswith(PROVISIONING_DONE_MARKER):
        return ProvisioningOutcome(
            status=ProvisioningStatus.DONE,
            message=outcome.msg,
            certificate=outcome.certificate,
            ca=outcome.ca,
            configuration=dict(outcome.configuration),
            server_claims=dict(outcome.server_claims),
        )

    message = outcome.msg or "provisioning helper did not defer and did not report completion"
    return ProvisioningOutcome(status=ProvisioningStatus.FAILED, message=message)
