"""
Application entry point.

Creates the FastAPI application and wires together:
- Routers (one per bounded context)
- Error handlers (centralized domain-to-HTTP mapping)
- Security middleware (headers, rate limiting)
- Logging configuration
- Process-wide adapters (AI client, tier store, result cache, use case)

No business logic belongs here.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded

from app.application.convergence.dtos import PipelinePolicy
from app.application.convergence.synthesize import SynthesizeConvergenceUseCase
from app.core.config import Settings, settings
from app.domain.convergence.adjudicator import AdjudicationPolicy, AISynthesisAdjudicator
from app.domain.convergence.aggregator import AggregationPolicy, ConvergenceAggregator
from app.domain.convergence.entities import EntityType
from app.domain.convergence.tier_gate import TierGate
from app.infrastructure.convergence.llm_client import build_generative_client
from app.infrastructure.convergence.prompt_loader import PromptLoader
from app.infrastructure.convergence.result_cache import InMemoryResultCache
from app.infrastructure.convergence.session_verifier import HmacSessionVerifier
from app.infrastructure.convergence.tier_repository import (
    SqlTierRepository,
    build_async_engine,
)
from app.interfaces.convergence.router import router as convergence_router
from app.interfaces.health import router as health_router
from app.shared.errors.handlers import register_error_handlers
from app.shared.logging import configure_logging
from app.shared.security.headers import SecurityHeadersMiddleware
from app.shared.security.rate_limiting import limiter, rate_limit_exceeded_handler

logger = logging.getLogger(__name__)


def build_use_case(
    cfg: Settings,
    model,
    tier_repository,
    result_cache: InMemoryResultCache,
) -> SynthesizeConvergenceUseCase:
    """Assemble the synthesis use case from settings and adapters."""
    adjudicator = AISynthesisAdjudicator(
        model=model,
        prompts=PromptLoader(),
        policy=AdjudicationPolicy(
            attempt_timeout=cfg.ai_attempt_timeout_seconds,
            max_attempts=cfg.ai_max_attempts,
            backoff_base=cfg.ai_backoff_base_seconds,
            backoff_cap=cfg.ai_backoff_cap_seconds,
            fallback_reserve=cfg.ai_fallback_reserve_seconds,
            allow_novel_labels=cfg.allow_novel_labels,
        ),
    )
    aggregator = ConvergenceAggregator(
        AggregationPolicy(
            agreement_threshold=cfg.agreement_threshold,
            single_source_threshold=cfg.single_source_threshold,
            tie_margin=cfg.tie_margin,
            min_total_weight=cfg.min_total_weight,
        )
    )
    return SynthesizeConvergenceUseCase(
        cache=result_cache,
        aggregator=aggregator,
        tier_gate=TierGate(tier_repository, cfg.monthly_arbitration_quota),
        adjudicator=adjudicator,
        policy=PipelinePolicy(
            budget_seconds=cfg.pipeline_budget_seconds,
            arbitration_confidence_floor=cfg.arbitration_confidence_floor,
            fallback_labels={
                EntityType.TRANSACTION: cfg.transaction_fallback_label,
                EntityType.INSTRUMENT: cfg.instrument_fallback_label,
            },
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build shared adapters once, dispose on shutdown."""
    model = build_generative_client(
        provider=settings.llm_provider,
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
        openrouter_url=settings.openrouter_url,
    )
    tier_repository = SqlTierRepository(build_async_engine(settings.database_url))
    result_cache = InMemoryResultCache(
        ttl_seconds=settings.cache_ttl_seconds,
        degraded_ttl_seconds=settings.degraded_cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )

    app.state.result_cache = result_cache
    app.state.tier_repository = tier_repository
    app.state.session_verifier = HmacSessionVerifier(settings.session_secret)
    app.state.synthesize_use_case = build_use_case(
        settings, model, tier_repository, result_cache
    )
    logger.info(
        "Convergence pipeline ready (provider=%s, model=%s)",
        settings.llm_provider,
        model.model_name,
    )

    yield

    # Shutdown
    await model.aclose()
    await tier_repository.dispose()
    logger.info("Convergence pipeline stopped (cache stats: %s)", result_cache.stats)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Registers routers, error handlers, and security middleware.
    This is the composition root of the application.

    Returns:
        A fully configured FastAPI application instance.
    """
    configure_logging(level=settings.log_level, debug=settings.debug)

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # --- Rate Limiting ---
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # --- Security Middleware ---
    app.add_middleware(SecurityHeadersMiddleware)

    # --- Error Handlers ---
    register_error_handlers(app)

    # --- Routers ---
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(convergence_router, prefix="/api/v1")

    return app


app = create_app()
