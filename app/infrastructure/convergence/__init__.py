"""
Infrastructure adapters for the convergence bounded context.

Concrete implementations of the convergence ports: result cache,
generative-AI clients, prompt templates, tier store, session verifier.
"""
