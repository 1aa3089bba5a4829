"""External collaborator contracts and the loopback implementations."""

from bundle_batch.collaborators.base import (
    AssemblyClient,
    AssemblyRequest,
    AssemblyResponse,
    Collaborators,
    DeliveryClient,
    DeliveryRequest,
    DeliveryResponse,
    RenderClient,
    RenderRequest,
    RenderResponse,
    SigningClient,
    SigningRequest,
    SigningResponse,
)
from bundle_batch.collaborators.loopback import loopback_collaborators

__all__ = [
    "AssemblyClient",
    "AssemblyRequest",
    "AssemblyResponse",
    "Collaborators",
    "DeliveryClient",
    "DeliveryRequest",
    "DeliveryResponse",
    "RenderClient",
    "RenderRequest",
    "RenderResponse",
    "SigningClient",
    "SigningRequest",
    "SigningResponse",
    "loopback_collaborators",
]
