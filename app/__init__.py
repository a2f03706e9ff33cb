"""
Convergence Synthesis — adjudicated labels from independent signals.

Application package root. This is a modular monolith using
hexagonal architecture (ports & adapters) with domain-driven design.

Bounded contexts:
    - convergence: Signal normalization, agreement assessment, tier-gated
      AI arbitration and cached pipeline results for bank transactions
      and tradable instruments.

Layers:
    - domain: Pure business logic, entities, ports (ABCs), errors.
    - application: Use cases, DTOs, orchestration.
    - infrastructure: Adapters (cache, AI clients, DB) implementing domain ports.
    - interfaces: FastAPI routers, Pydantic schemas.
    - shared: Cross-cutting concerns (errors, security, logging).
"""
