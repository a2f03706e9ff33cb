"""
Convergence interface package.

FastAPI routes, Pydantic schemas and request-scoped dependencies for the
convergence synthesis endpoints.
"""
