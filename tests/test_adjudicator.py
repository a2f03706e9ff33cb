"""
Tests for the AI synthesis adjudicator.

The generative model is a scripted fake; sleeps between retries are
recorded instead of awaited.
"""

import pytest

from app.domain.convergence.adjudicator import (
    AdjudicationPolicy,
    AISynthesisAdjudicator,
    Deadline,
    describe_entity,
    describe_signals,
)
from app.domain.convergence.aggregator import ConvergenceAggregator
from app.domain.convergence.entities import Signal
from app.domain.convergence.errors import AIServiceError
from tests.fakes import FakeClock, FakeModel, StaticPrompts, instrument, reply, transaction

SIGNALS = [
    Signal(source_id="rules", label="P-500", confidence=0.5, rationale="merchant history"),
    Signal(source_id="stats", label="P-600", confidence=0.5),
]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _adjudicator(model: FakeModel, sleep=None, prompts=None, **policy) -> AISynthesisAdjudicator:
    return AISynthesisAdjudicator(
        model=model,
        prompts=prompts or StaticPrompts(),
        policy=AdjudicationPolicy(**policy),
        sleep=sleep or RecordingSleep(),
    )


def _assessment(signals=SIGNALS):
    return ConvergenceAggregator().assess(signals)


class TestPromptRendering:
    """Tests for prompt construction."""

    def test_transaction_description_skips_blank_fields(self) -> None:
        text = describe_entity(transaction())
        assert "merchant: Blue Bottle Coffee" in text
        assert "amount: -4.75" in text
        assert "account" not in text

    def test_instrument_description_lists_indicators(self) -> None:
        text = describe_entity(instrument())
        assert "symbol: AAPL" in text
        assert "quality: 64.5" in text
        assert "vol_edge: 71.0" in text

    def test_signal_lines(self) -> None:
        assert describe_signals([]) == "(no signals were supplied)"
        lines = describe_signals(SIGNALS).splitlines()
        assert lines[0] == "- [rules] label=P-500 confidence=0.50 rationale=merchant history"

    def test_user_prompt_carries_status_and_labels(self) -> None:
        system, user = _adjudicator(FakeModel()).build_prompt(transaction(), SIGNALS, _assessment())
        assert system == "Pick one label. Reply with JSON."
        assert "status=conflicting" in user
        assert "labels=P-500, P-600" in user


class TestAdjudicate:
    """Tests for the retrying arbitration call."""

    @pytest.mark.asyncio
    async def test_successful_arbitration(self) -> None:
        model = FakeModel([reply("p-600", 0.82)])
        record = await _adjudicator(model).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.final_label == "P-600"
        assert record.degraded is False
        assert record.novel_label is False
        assert record.confidence == pytest.approx(0.82)
        assert record.attempts == 1
        assert record.model == "fake/arbiter"
        assert record.prompt_tokens == 120
        assert record.completion_tokens == 30
        assert model.calls[0]["timeout"] == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_json_inside_prose_is_accepted(self) -> None:
        model = FakeModel(["Sure!\n```json\n" + reply("P-500") + "\n```"])
        record = await _adjudicator(model).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.final_label == "P-500"

    @pytest.mark.asyncio
    async def test_novel_label_is_flagged(self) -> None:
        model = FakeModel([reply("P-720")])
        record = await _adjudicator(model).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.final_label == "P-720"
        assert record.novel_label is True
        assert record.degraded is False

    @pytest.mark.asyncio
    async def test_novel_label_rejected_when_disallowed(self) -> None:
        model = FakeModel([reply("P-720")])
        record = await _adjudicator(model, allow_novel_labels=False).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.degraded is True
        assert record.final_label == "P-500"
        assert "unlisted label" in record.error

    @pytest.mark.asyncio
    async def test_retries_after_failure_with_backoff(self) -> None:
        sleep = RecordingSleep()
        model = FakeModel([AIServiceError("HTTP 503"), "not json at all", reply("P-600")])
        record = await _adjudicator(model, sleep=sleep).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.final_label == "P-600"
        assert record.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_honoured_and_capped(self) -> None:
        sleep = RecordingSleep()
        model = FakeModel(
            [AIServiceError("HTTP 429", retry_after=7), AIServiceError("HTTP 429", retry_after=500), reply("P-600")]
        )
        await _adjudicator(model, sleep=sleep, backoff_cap=30).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert sleep.delays == [7.0, 30.0]

    @pytest.mark.asyncio
    async def test_unexpected_client_error_counts_as_failed_attempt(self) -> None:
        model = FakeModel([RuntimeError("socket closed"), reply("P-600")])
        record = await _adjudicator(model).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.attempts == 2
        assert record.degraded is False

    @pytest.mark.asyncio
    async def test_every_attempt_failing_degrades_to_candidate(self) -> None:
        model = FakeModel([AIServiceError("HTTP 500")])
        record = await _adjudicator(model).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.degraded is True
        assert record.final_label == "P-500"
        assert record.attempts == 3
        assert record.error == "HTTP 500"
        assert len(model.calls) == 3

    @pytest.mark.asyncio
    async def test_slow_model_times_out(self) -> None:
        model = FakeModel([reply("P-600")], delay=1.0)
        record = await _adjudicator(model, attempt_timeout=0.05, max_attempts=1).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert record.degraded is True
        assert "timed out" in record.error

    @pytest.mark.asyncio
    async def test_budget_smaller_than_reserve_skips_the_call(self) -> None:
        model = FakeModel([reply("P-600")])
        record = await _adjudicator(model, fallback_reserve=5.0).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(4.0)
        )
        assert model.calls == []
        assert record.degraded is True
        assert record.attempts == 0
        assert "budget" in record.error

    @pytest.mark.asyncio
    async def test_attempt_timeout_shrinks_to_remaining_budget(self) -> None:
        clock = FakeClock()
        deadline = Deadline(30.0, clock=clock)
        clock.advance(10.0)
        model = FakeModel([reply("P-600")])
        await _adjudicator(model, attempt_timeout=60.0, fallback_reserve=5.0).adjudicate(
            transaction(), SIGNALS, _assessment(), deadline
        )
        assert model.calls[0]["timeout"] == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_backoff_longer_than_budget_stops_retrying(self) -> None:
        sleep = RecordingSleep()
        model = FakeModel([AIServiceError("HTTP 503")])
        record = await _adjudicator(
            model, sleep=sleep, attempt_timeout=5.0, fallback_reserve=1.0, backoff_base=20.0
        ).adjudicate(transaction(), SIGNALS, _assessment(), Deadline(10.0, clock=FakeClock()))
        assert record.attempts == 1
        assert sleep.delays == []
        assert "budget" in record.error

    @pytest.mark.asyncio
    async def test_broken_prompt_template_degrades_without_calling_model(self) -> None:
        model = FakeModel([reply("P-600")])
        prompts = StaticPrompts(user_template="{entity} {missing_placeholder}")
        record = await _adjudicator(model, prompts=prompts).adjudicate(
            transaction(), SIGNALS, _assessment(), Deadline(300)
        )
        assert model.calls == []
        assert record.degraded is True
        assert record.error == "invalid prompt template"

    @pytest.mark.asyncio
    async def test_insufficient_assessment_without_candidate(self) -> None:
        model = FakeModel([AIServiceError("HTTP 500")])
        record = await _adjudicator(model, max_attempts=1).adjudicate(
            transaction(), [], _assessment([]), Deadline(300)
        )
        assert record.degraded is True
        assert record.final_label is None

    @pytest.mark.asyncio
    async def test_budget_spent_by_slow_failures_stops_retrying(self) -> None:
        clock = FakeClock()
        sleep = RecordingSleep()

        class SlowFailingModel(FakeModel):
            async def complete(self, system_prompt, user_prompt, timeout):
                self.calls.append({"timeout": timeout})
                clock.advance(10.0)
                raise AIServiceError("HTTP 502")

        model = SlowFailingModel()
        record = await _adjudicator(
            model, sleep=sleep, attempt_timeout=5.0, fallback_reserve=1.0
        ).adjudicate(transaction(), SIGNALS, _assessment(), Deadline(20.0, clock=clock))

        assert record.attempts == 2
        assert sleep.delays == [1.0]
        assert record.degraded is True
        assert "budget" in record.error
