"""
llm_cloud package: access to the external LLM platform.

- provider: builds the OpenAI-compatible client for the configured provider
- generation: the Generation Service contract and its implementations
"""
