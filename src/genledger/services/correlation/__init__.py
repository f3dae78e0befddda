"""Request correlation: id extraction and armed request tracking."""

from genledger.services.correlation.context import (
    AccountContext,
    ArmedRequest,
    ArmedRequestRegistry,
    GenerationContext,
    OutboundRequest,
    PendingUpload,
)
from genledger.services.correlation.correlator import RequestCorrelator

__all__ = [
    "AccountContext",
    "ArmedRequest",
    "ArmedRequestRegistry",
    "GenerationContext",
    "OutboundRequest",
    "PendingUpload",
    "RequestCorrelator",
]
