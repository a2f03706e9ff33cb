"""
Convergence bounded context — domain layer.

This module contains all domain logic for convergence synthesis:
- Normalizing upstream opinions into signals
- Assessing agreement between signals
- Tier policy for AI arbitration
- Adjudicating disagreement with a generative model
"""
