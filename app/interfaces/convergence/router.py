"""
FastAPI router for the convergence bounded context.

Two thin routes, one per entity type, over the same use case.
Input validation is handled by Pydantic schemas.
Error mapping is handled by centralized error handlers.
"""

from fastapi import APIRouter, Depends, Query, Request, Response

from app.application.convergence.dtos import SynthesisOutcome, SynthesizeCommand
from app.application.convergence.synthesize import SynthesizeConvergenceUseCase
from app.domain.convergence.entities import (
    Caller,
    Entity,
    EntityType,
    InstrumentFeatures,
    TransactionFeatures,
)
from app.domain.convergence.tiers import Feature
from app.interfaces.convergence.dependencies import (
    get_synthesize_use_case,
    require_feature,
)
from app.interfaces.convergence.schemas import (
    ErrorResponse,
    InstrumentSynthesisRequest,
    PipelineResultResponse,
    TransactionSynthesisRequest,
)
from app.shared.security.rate_limiting import HEAVY_RATE_LIMIT, limiter

router = APIRouter(tags=["convergence"])

_ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _set_pipeline_headers(response: Response, outcome: SynthesisOutcome) -> None:
    response.headers["X-Cache-Hit"] = "true" if outcome.cache_hit else "false"
    if outcome.cache_hit:
        response.headers["X-Cache-Age-Seconds"] = str(int(outcome.cache_age_seconds))
    response.headers["X-Pipeline-Runtime-Ms"] = str(int(outcome.result.pipeline_ms))
    response.headers["X-Fingerprint"] = outcome.result.fingerprint


async def _synthesize(
    use_case: SynthesizeConvergenceUseCase,
    entity: Entity,
    signals: list,
    caller: Caller,
    refresh: bool,
    response: Response,
) -> PipelineResultResponse:
    outcome = await use_case.execute(
        SynthesizeCommand(
            entity=entity,
            raw_signals=tuple(signals),
            caller=caller,
            refresh=refresh,
        )
    )
    _set_pipeline_headers(response, outcome)
    return PipelineResultResponse.from_domain(outcome.result)


@router.post(
    "/ai/convergence-synthesis",
    response_model=PipelineResultResponse,
    responses=_ERROR_RESPONSES,
    summary="Synthesize a transaction category",
    description=(
        "Reconcile independent categorizer opinions for one bank transaction "
        "into a single chart-of-accounts code, with AI arbitration when they "
        "disagree and the plan allows it."
    ),
)
@limiter.limit(HEAVY_RATE_LIMIT)
async def synthesize_transaction(
    request: Request,
    response: Response,
    payload: TransactionSynthesisRequest,
    refresh: bool = Query(default=False, description="Bypass the result cache"),
    caller: Caller = Depends(require_feature(Feature.BOOKKEEPING_SYNTHESIS)),
    use_case: SynthesizeConvergenceUseCase = Depends(get_synthesize_use_case),
) -> PipelineResultResponse:
    """Adjudicate a chart-of-accounts code for a transaction."""
    features = payload.entity.features
    entity = Entity(
        entity_id=payload.entity.entity_id,
        entity_type=EntityType.TRANSACTION,
        features=TransactionFeatures(
            amount=features.amount,
            merchant_name=features.merchant_name,
            description=features.description,
            category_primary=features.category_primary,
            category_detailed=features.category_detailed,
            posted_on=features.posted_on,
            account_name=features.account_name,
        ),
    )
    return await _synthesize(use_case, entity, payload.signals, caller, refresh, response)


@router.post(
    "/trading/convergence",
    response_model=PipelineResultResponse,
    responses=_ERROR_RESPONSES,
    summary="Synthesize an instrument signal",
    description=(
        "Reconcile independent scoring engines for one instrument into a "
        "single directional label."
    ),
)
@limiter.limit(HEAVY_RATE_LIMIT)
async def synthesize_instrument(
    request: Request,
    response: Response,
    payload: InstrumentSynthesisRequest,
    refresh: bool = Query(default=False, description="Bypass the result cache"),
    caller: Caller = Depends(require_feature(Feature.TRADING_ANALYTICS)),
    use_case: SynthesizeConvergenceUseCase = Depends(get_synthesize_use_case),
) -> PipelineResultResponse:
    """Adjudicate a directional label for an instrument."""
    features = payload.entity.features
    entity = Entity(
        entity_id=payload.entity.entity_id,
        entity_type=EntityType.INSTRUMENT,
        features=InstrumentFeatures(
            symbol=features.symbol.upper(),
            last_price=features.last_price,
            sector=features.sector,
            strategy=features.strategy,
            indicators=dict(features.indicators),
        ),
    )
    return await _synthesize(use_case, entity, payload.signals, caller, refresh, response)
