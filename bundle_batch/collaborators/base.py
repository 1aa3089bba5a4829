"""
Collaborator contracts.

Contract:
    The pipeline talks to four external systems (renderer, assembler,
    signing provider, document-management delivery) only through these
    Protocols and frozen request/response dataclasses.  Implementations
    report retryable problems as ``TransientError`` and refusals as
    ``PermanentError``; anything else they raise is treated as permanent.

Architecture: bundle_batch/collaborators. No DB access.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


# =============================================================================
# Requests / responses
# =============================================================================


@dataclass(frozen=True)
class RenderRequest:
    bundle_id: str
    contract_id: str


@dataclass(frozen=True)
class RenderResponse:
    artifact_ref: str


@dataclass(frozen=True)
class AssemblyRequest:
    """``artifact_refs`` is already in ascending sequence_no order."""

    bundle_id: str
    artifact_refs: tuple[str, ...]


@dataclass(frozen=True)
class AssemblyResponse:
    unsigned_artifact_ref: str


@dataclass(frozen=True)
class SigningRequest:
    """``callback_token`` is the capability the provider must echo back."""

    bundle_id: str
    unsigned_artifact_ref: str
    callback_token: str


@dataclass(frozen=True)
class SigningResponse:
    sign_request_id: str


@dataclass(frozen=True)
class DeliveryRequest:
    bundle_id: str
    contract_id: str
    signed_artifact_ref: str
    log_ref: str | None


@dataclass(frozen=True)
class DeliveryResponse:
    delivery_id: str
    receipt: str


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class RenderClient(Protocol):
    def render(self, request: RenderRequest) -> RenderResponse: ...


@runtime_checkable
class AssemblyClient(Protocol):
    def assemble(self, request: AssemblyRequest) -> AssemblyResponse: ...


@runtime_checkable
class SigningClient(Protocol):
    def request_signing(self, request: SigningRequest) -> SigningResponse: ...


@runtime_checkable
class DeliveryClient(Protocol):
    def deliver(self, request: DeliveryRequest) -> DeliveryResponse: ...


@dataclass(frozen=True)
class Collaborators:
    """The four external systems, wired together for the container."""

    renderer: RenderClient
    assembler: AssemblyClient
    signer: SigningClient
    deliverer: DeliveryClient
