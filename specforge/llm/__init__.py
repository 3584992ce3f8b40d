__all__ = [
    "Completion",
    "EventLogger",
    "GenerationPort",
    "GenerationRequest",
    "GenerationResponse",
    "ReplayConfig",
    "ReplayPort",
    "ReplayStore",
    "TokenLedger",
    "TracedPort",
]

from .port import Completion, GenerationPort, GenerationRequest, GenerationResponse
from .replay import ReplayConfig, ReplayPort, ReplayStore
from .tracing import EventLogger, TokenLedger, TracedPort
