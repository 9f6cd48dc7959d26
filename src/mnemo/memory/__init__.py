"""
Memory module - hybrid episodic/semantic storage.

Layers:
- episodic: time-ordered events chained per session (graph backend)
- semantic: distilled concepts retrievable by meaning (vector backend)
- embedding: text -> vector with retry and an LRU cache
- profile: user model derived from semantic memories

Storage: SQLite (aiosqlite) for both backends
"""
