"""
Loopback collaborators for local smoke runs.

Every call succeeds immediately and returns a deterministic reference built
from its inputs, so the full lifecycle can be exercised from the command
line without any external system.  The loopback signer keeps the tokens it
was handed so the operator can play the provider's callback.
"""

from __future__ import annotations

import hashlib
import threading

from bundle_batch.collaborators.base import (
    AssemblyRequest,
    AssemblyResponse,
    Collaborators,
    DeliveryRequest,
    DeliveryResponse,
    RenderRequest,
    RenderResponse,
    SigningRequest,
    SigningResponse,
)


def _short_hash(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:12]


class LoopbackRenderer:
    def render(self, request: RenderRequest) -> RenderResponse:
        return RenderResponse(
            artifact_ref=f"loopback://render/{request.bundle_id}/{request.contract_id}.pdf"
        )


class LoopbackAssembler:
    def assemble(self, request: AssemblyRequest) -> AssemblyResponse:
        digest = _short_hash(*request.artifact_refs)
        return AssemblyResponse(
            unsigned_artifact_ref=f"loopback://bundle/{request.bundle_id}/{digest}.pdf"
        )


class LoopbackSigner:
    """Records issued callback tokens by bundle id."""

    def __init__(self):
        self._lock = threading.Lock()
        self.issued: dict[str, str] = {}

    def request_signing(self, request: SigningRequest) -> SigningResponse:
        with self._lock:
            self.issued[request.bundle_id] = request.callback_token
        return SigningResponse(
            sign_request_id=f"loopback-sign-{_short_hash(request.bundle_id, request.callback_token)}"
        )


class LoopbackDeliverer:
    def deliver(self, request: DeliveryRequest) -> DeliveryResponse:
        delivery_id = f"loopback-dlv-{_short_hash(request.bundle_id, request.contract_id)}"
        return DeliveryResponse(
            delivery_id=delivery_id,
            receipt=f"delivered {request.contract_id} ({request.signed_artifact_ref})",
        )


def loopback_collaborators() -> Collaborators:
    return Collaborators(
        renderer=LoopbackRenderer(),
        assembler=LoopbackAssembler(),
        signer=LoopbackSigner(),
        deliverer=LoopbackDeliverer(),
    )
