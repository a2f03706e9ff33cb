"""
AI synthesis adjudicator.

Resolves disagreement or low confidence between signals by asking a
generative model for a single best label. Every call runs inside a
wall-clock budget shared across retries. When all attempts fail, a
degraded record carrying the aggregator's candidate is returned instead
of an error: the pipeline never fails because the AI service is down.

Usage:
    adjudicator = AISynthesisAdjudicator(model=client, prompts=loader)
    record = await adjudicator.adjudicate(entity, signals, assessment, deadline)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from app.domain.convergence.entities import (
    AdjudicationRecord,
    ConvergenceAssessment,
    ConvergenceStatus,
    Entity,
    InstrumentFeatures,
    ModelCompletion,
    Signal,
    TransactionFeatures,
)
from app.domain.convergence.errors import AIServiceError, BudgetExceededError
from app.domain.convergence.ports import GenerativeModelPort, PromptRepository
from app.domain.convergence.signal_adapter import normalize_label

logger = logging.getLogger(__name__)

ARBITRATED_STATUSES = (ConvergenceStatus.CONFLICTING, ConvergenceStatus.INSUFFICIENT)


def needs_arbitration(assessment: ConvergenceAssessment, confidence_floor: float) -> bool:
    """Return True when an assessment alone is not trusted to decide the label."""
    if assessment.status in ARBITRATED_STATUSES:
        return True
    return (
        assessment.status is ConvergenceStatus.PARTIAL
        and assessment.effective_confidence < confidence_floor
    )


@dataclass(frozen=True)
class AdjudicationPolicy:
    """Timeout, retry and labelling rules for arbitration.

    Attributes:
        attempt_timeout: Upper bound in seconds for one model call.
        max_attempts: Total calls allowed, first attempt included.
        backoff_base: First retry delay in seconds; doubles per retry.
        backoff_cap: Longest delay honoured, including Retry-After hints.
        fallback_reserve: Seconds kept back from the budget for
            assembling the result after the last attempt.
        allow_novel_labels: Accept labels no signal proposed (flagged).
    """

    attempt_timeout: float = 60.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 120.0
    fallback_reserve: float = 5.0
    allow_novel_labels: bool = True


@dataclass
class Deadline:
    """Wall-clock budget measured on a monotonic clock."""

    budget_seconds: float
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def remaining(self) -> float:
        return self.budget_seconds - (self.clock() - self.started_at)


@dataclass(frozen=True)
class _Verdict:
    label: str
    rationale: str
    confidence: Optional[float]
    novel: bool


@dataclass
class _Usage:
    attempts: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AIServiceError) and not isinstance(exc, BudgetExceededError)


class wait_retry_after(wait_base):
    """Wait the service's Retry-After hint when given, else the fallback wait."""

    def __init__(self, fallback: wait_base, cap: float) -> None:
        self.fallback = fallback
        self.cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, AIServiceError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.cap)
        return self.fallback(retry_state)


class stop_before_deadline(stop_base):
    """Stop when the next wait would leave no budget for another attempt."""

    def __init__(self, deadline: Deadline, reserve: float, wait: wait_base) -> None:
        self.deadline = deadline
        self.reserve = reserve
        self.wait = wait
        self.triggered = False

    def __call__(self, retry_state: RetryCallState) -> bool:
        delay = self.wait(retry_state)
        self.triggered = delay >= self.deadline.remaining() - self.reserve
        return self.triggered


def describe_entity(entity: Entity) -> str:
    """Render an entity's features as prompt lines, skipping blanks."""
    features = entity.features
    rows: list[tuple[str, Any]] = [("entity_id", entity.entity_id)]
    if isinstance(features, TransactionFeatures):
        rows += [
            ("amount", features.amount),
            ("merchant", features.merchant_name),
            ("description", features.description),
            ("category", features.category_primary),
            ("category_detail", features.category_detailed),
            ("posted_on", features.posted_on),
            ("account", features.account_name),
        ]
    elif isinstance(features, InstrumentFeatures):
        rows += [
            ("symbol", features.symbol),
            ("last_price", features.last_price),
            ("sector", features.sector),
            ("strategy", features.strategy),
        ]
        rows += [
            (name, f"{value:.1f}") for name, value in sorted(features.indicators.items())
        ]
    return "\n".join(f"{name}: {value}" for name, value in rows if value is not None)


def describe_signals(signals: Sequence[Signal]) -> str:
    """Render signals as one prompt line each."""
    if not signals:
        return "(no signals were supplied)"
    lines = []
    for signal in signals:
        line = f"- [{signal.source_id}] label={signal.label} confidence={signal.confidence:.2f}"
        if signal.rationale:
            line += f" rationale={signal.rationale}"
        lines.append(line)
    return "\n".join(lines)


def _extract_json(text: str) -> dict[str, Any]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise AIServiceError("reply contained no JSON object")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AIServiceError(f"reply was not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise AIServiceError("reply JSON was not an object")
    return payload


def _optional_confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not 0.0 <= number <= 1.0:
        return None
    return number


class AISynthesisAdjudicator:
    """Arbitrates between signals with a generative model.

    Args:
        model: Generative-AI client.
        prompts: Source of system/user prompt templates per entity type.
        policy: Timeout and retry rules.
        sleep: Awaitable sleep used between retries; injectable for tests.
        clock: Monotonic clock used to measure latency.
    """

    def __init__(
        self,
        model: GenerativeModelPort,
        prompts: PromptRepository,
        policy: AdjudicationPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._model = model
        self._prompts = prompts
        self._policy = policy or AdjudicationPolicy()
        self._sleep = sleep
        self._clock = clock

    @property
    def policy(self) -> AdjudicationPolicy:
        return self._policy

    def build_prompt(
        self,
        entity: Entity,
        signals: Sequence[Signal],
        assessment: ConvergenceAssessment,
    ) -> tuple[str, str]:
        """Return the (system, user) prompt pair for one arbitration."""
        prompts = self._prompts.get_prompts(entity.entity_type)
        user_prompt = prompts.user_template.format(
            entity_type=entity.entity_type.value,
            entity=describe_entity(entity),
            signals=describe_signals(signals),
            status=assessment.status.value,
            candidate=assessment.candidate_label or "none",
            labels=", ".join(sorted(assessment.proposed_labels)) or "none",
        )
        return prompts.system, user_prompt

    async def adjudicate(
        self,
        entity: Entity,
        signals: Sequence[Signal],
        assessment: ConvergenceAssessment,
        deadline: Deadline,
    ) -> AdjudicationRecord:
        """Ask the model for a final label, degrading instead of failing.

        Args:
            entity: The entity being judged.
            signals: Normalized signals shown to the model.
            assessment: Aggregator output; its candidate is the fallback.
            deadline: Budget shared with the rest of the pipeline.

        Returns:
            A successful or degraded AdjudicationRecord.
        """
        started = self._clock()
        policy = self._policy
        usage = _Usage()

        try:
            system_prompt, user_prompt = self.build_prompt(entity, signals, assessment)
        except (KeyError, IndexError, ValueError) as exc:
            logger.error("Adjudication prompt template is invalid: %s", exc)
            return self._degraded(assessment, started, usage, AIServiceError("invalid prompt template"))

        wait = wait_retry_after(
            wait_exponential(multiplier=policy.backoff_base, max=policy.backoff_cap),
            cap=policy.backoff_cap,
        )
        budget_stop = stop_before_deadline(deadline, policy.fallback_reserve, wait)

        def log_failure(retry_state: RetryCallState) -> None:
            logger.warning(
                "Adjudication attempt %d/%d for %s failed: %s",
                retry_state.attempt_number,
                policy.max_attempts,
                entity.entity_id,
                retry_state.outcome.exception().reason,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts) | budget_stop,
            wait=wait,
            retry=retry_if_exception(_is_retryable),
            after=log_failure,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            verdict, completion = await retrying(
                self._attempt, entity, system_prompt, user_prompt, assessment, deadline, usage
            )
        except AIServiceError as exc:
            error = BudgetExceededError(deadline.budget_seconds) if budget_stop.triggered else exc
            return self._degraded(assessment, started, usage, error)

        latency = round((self._clock() - started) * 1000, 2)
        logger.info(
            "Adjudicated %s as %s in %.0fms (attempts=%d, novel=%s)",
            entity.entity_id,
            verdict.label,
            latency,
            usage.attempts,
            verdict.novel,
        )
        return AdjudicationRecord(
            final_label=verdict.label,
            rationale=verdict.rationale,
            model_latency_ms=latency,
            degraded=False,
            novel_label=verdict.novel,
            confidence=verdict.confidence,
            attempts=usage.attempts,
            model=completion.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )

    async def _attempt(
        self,
        entity: Entity,
        system_prompt: str,
        user_prompt: str,
        assessment: ConvergenceAssessment,
        deadline: Deadline,
        usage: _Usage,
    ) -> tuple[_Verdict, ModelCompletion]:
        policy = self._policy
        timeout = min(policy.attempt_timeout, deadline.remaining() - policy.fallback_reserve)
        if timeout <= 0:
            raise BudgetExceededError(deadline.budget_seconds)

        usage.attempts += 1
        try:
            completion = await asyncio.wait_for(
                self._model.complete(system_prompt, user_prompt, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise AIServiceError(f"attempt timed out after {timeout:.1f}s") from exc
        except AIServiceError:
            raise
        except Exception as exc:
            raise AIServiceError(f"{type(exc).__name__}: {exc}") from exc

        usage.prompt_tokens += completion.prompt_tokens
        usage.completion_tokens += completion.completion_tokens
        return self._parse(entity, completion, assessment), completion

    def _parse(
        self,
        entity: Entity,
        completion: ModelCompletion,
        assessment: ConvergenceAssessment,
    ) -> _Verdict:
        payload = _extract_json(completion.text)
        try:
            label = normalize_label(entity.entity_type, payload.get("label"))
        except ValueError as exc:
            raise AIServiceError(f"reply {exc}") from exc

        novel = label not in assessment.proposed_labels
        if novel and not self._policy.allow_novel_labels:
            raise AIServiceError(f"model proposed unlisted label {label}")

        rationale = payload.get("rationale")
        return _Verdict(
            label=label,
            rationale=str(rationale).strip() if rationale else "",
            confidence=_optional_confidence(payload.get("confidence")),
            novel=novel,
        )

    def _degraded(
        self,
        assessment: ConvergenceAssessment,
        started: float,
        usage: _Usage,
        error: AIServiceError,
    ) -> AdjudicationRecord:
        logger.error(
            "Arbitration degraded after %d attempt(s): %s", usage.attempts, error.reason
        )
        return AdjudicationRecord(
            final_label=assessment.candidate_label,
            rationale="AI arbitration unavailable; kept the aggregator candidate",
            model_latency_ms=round((self._clock() - started) * 1000, 2),
            degraded=True,
            attempts=usage.attempts,
            model=self._model.model_name,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            error=error.reason,
        )
