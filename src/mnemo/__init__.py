"""
Mnemo - hybrid episodic/semantic memory for conversational agents.

Package structure:
- core: config, logging, shared types, errors, retry helpers
- llm: completion/embedding provider abstraction, token counting
- memory: episodic and semantic stores, embedding client, backends
- context: relevance scoring, compression, extraction, context assembly
"""

__version__ = "0.1.0"
