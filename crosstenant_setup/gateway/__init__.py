"""Gateway package — the boundary between the engine and remote M365 services."""

from .base import CollaborationGateway, GatewayFault, ResourceNotFound, AccessLevel

__all__ = [
    "CollaborationGateway",
    "GatewayFault",
    "ResourceNotFound",
    "AccessLevel",
]
