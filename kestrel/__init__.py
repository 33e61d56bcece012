"""kestrel: an interactive coding agent for LLM backends."""
