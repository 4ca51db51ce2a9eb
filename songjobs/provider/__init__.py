"""
Generation provider access.

Normalizes the provider's heterogeneous responses into canonical envelopes.
"""

from .gateway import ProviderGateway, ProviderRejected, ProviderUnavailable, SubmitResult, get_gateway
from .normalize import StatusEnvelope, canonical_status, normalize_envelope

__all__ = [
    "ProviderGateway",
    "ProviderRejected",
    "ProviderUnavailable",
    "SubmitResult",
    "StatusEnvelope",
    "canonical_status",
    "get_gateway",
    "normalize_envelope",
]
