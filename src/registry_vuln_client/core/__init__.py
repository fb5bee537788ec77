"""Core building blocks: configuration, transports and the registry client."""

from .registry_client import RegistryClient
from .types import RegistryConfig, RequestResult, TransportRequest

__all__ = ["RegistryClient", "RegistryConfig", "RequestResult", "TransportRequest"]
