"""Configuration models for stream assembly and sessions."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AssemblerConfig(BaseModel):
    """Bounds applied to a single answer stream."""

    max_thinking_nodes: int = Field(default=10_000, ge=1)


class SessionConfig(BaseModel):
    """Configures session scheduling, timeouts and capacity."""

    inactivity_timeout_seconds: float = Field(default=60.0, gt=0.0)
    max_active_sessions: int = Field(default=256, ge=1)
    assembler: AssemblerConfig = Field(default_factory=AssemblerConfig)


class SuggestionConfig(BaseModel):
    """Configures next-step suggestion generation."""

    max_suggestions: int = Field(default=3, ge=1, le=10)
