"""Memory engine: domain types, routing, reflection and LLM collaborators."""
