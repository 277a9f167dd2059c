"""Answer stream assembly package."""

from .config import AssemblerConfig, SessionConfig, SuggestionConfig
from .stream.assembler import AssemblerState, StreamAssembler

__all__ = [
    "AssemblerConfig",
    "AssemblerState",
    "SessionConfig",
    "StreamAssembler",
    "SuggestionConfig",
]
