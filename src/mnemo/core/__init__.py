"""
Core module - configuration, shared types, error taxonomy.

Components:
- config: Settings management via pydantic-settings
- types: Memory data model (episodic, semantic, goals, scores)
- errors: Exception taxonomy (transient vs fatal)
- retry: Bounded exponential retry with per-call deadlines
- logging: Structured logging setup
"""

from mnemo.core.config import Settings
from mnemo.core.types import EpisodicMemory, SemanticMemory

__all__ = ["Settings", "EpisodicMemory", "SemanticMemory"]
