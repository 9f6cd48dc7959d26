"""
LLM module - language model provider abstraction.

Providers:
- completion: summarization and semantic extraction
- embedding: text -> fixed-length vector

Concrete adapters go through LiteLLM, so any LiteLLM-supported backend
(Ollama, OpenAI, Anthropic, ...) can be configured by model name.
"""
