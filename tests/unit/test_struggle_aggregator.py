"""
Unit tests for the StruggleAggregator.

Checks the weighted score, the frequency-adjusted threshold, candidate
selection and repeat suppression within a session.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from config import Settings
from src.adaptive.struggle_aggregator import (
    AggregatorConfig,
    InterventionFrequency,
    StruggleAggregator,
)
from src.adaptive.struggle_detectors import (
    DETECTORS,
    DetectionContext,
    DetectorConfig,
    SignalType,
    StruggleSignal,
    run_detectors,
)
from src.delivery.decision_outbox import CollectingInterface
from src.delivery.engine import MentalModelEngine
from src.graph.errors import ConfigurationError
from src.graph.maintenance import PruningConfig


def signal(signal_type, confidence=1.0, *node_ids):
    return StruggleSignal(signal_type, confidence, frozenset(node_ids or ("reducer",)), 0.0)


def all_signals(*node_ids):
    return [signal(signal_type, 1.0, *node_ids) for signal_type in SignalType]


def no_proficiency(node_id):
    return 0.0


class TestScore:
    def test_all_signals_at_full_confidence(self):
        assert StruggleAggregator().score(all_signals()) == pytest.approx(1.0)

    def test_weighted_sum(self):
        signals = [
            signal(SignalType.ERROR_CYCLE, 1.0),
            signal(SignalType.REPEATED_EDITS, 0.5),
        ]
        assert StruggleAggregator().score(signals) == pytest.approx(0.3 + 0.125)

    def test_no_signals(self):
        assert StruggleAggregator().score([]) == 0.0


class TestThreshold:
    def test_all_signals_raise_intervention(self, now):
        assessment = StruggleAggregator().evaluate(all_signals(), no_proficiency, now)

        assert assessment.triggered
        assert assessment.decision is not None
        assert assessment.decision.node_id == "reducer"
        assert set(assessment.decision.signal_types) == set(SignalType)

    def test_score_equal_to_threshold_does_not_raise(self, now):
        config = AggregatorConfig(
            weights={SignalType.ERROR_CYCLE: 0.5},
            base_threshold=0.5,
        )
        assessment = StruggleAggregator(config).evaluate(
            [signal(SignalType.ERROR_CYCLE)], no_proficiency, now
        )
        assert assessment.score == pytest.approx(0.5)
        assert assessment.decision is None

    @pytest.mark.parametrize(
        "frequency,expected",
        [
            (InterventionFrequency.MINIMAL, 0.845),
            (InterventionFrequency.BALANCED, 0.65),
            (InterventionFrequency.AGGRESSIVE, 0.455),
        ],
    )
    def test_frequency_multipliers(self, frequency, expected):
        assert AggregatorConfig(frequency=frequency).threshold == pytest.approx(expected)

    def test_aggressive_raises_where_balanced_does_not(self, now):
        signals = [signal(SignalType.ERROR_CYCLE), signal(SignalType.LONG_PAUSE)]  # 0.5
        balanced = StruggleAggregator(AggregatorConfig())
        aggressive = StruggleAggregator(AggregatorConfig(frequency=InterventionFrequency.AGGRESSIVE))

        assert balanced.evaluate(signals, no_proficiency, now).decision is None
        assert aggressive.evaluate(signals, no_proficiency, now).decision is not None


class TestCandidateSelection:
    def test_most_implicated_node_wins(self):
        signals = [
            signal(SignalType.ERROR_CYCLE, 1.0, "a", "b"),
            signal(SignalType.REPEATED_EDITS, 1.0, "b"),
        ]
        assert StruggleAggregator.select_candidate(signals, no_proficiency) == "b"

    def test_tie_goes_to_lowest_proficiency(self):
        signals = [signal(SignalType.ERROR_CYCLE, 1.0, "a", "b")]
        scores = {"a": 60.0, "b": 20.0}
        assert StruggleAggregator.select_candidate(signals, scores.__getitem__) == "b"

    def test_full_tie_is_deterministic(self):
        signals = [signal(SignalType.ERROR_CYCLE, 1.0, "zeta", "alpha")]
        assert StruggleAggregator.select_candidate(signals, no_proficiency) == "alpha"

    def test_no_nodes_means_no_decision(self, now):
        signals = [StruggleSignal(t, 1.0, frozenset(), 0.0) for t in SignalType]
        assessment = StruggleAggregator().evaluate(signals, no_proficiency, now)
        assert assessment.candidate is None
        assert assessment.decision is None


class TestRepeatSuppression:
    def test_identical_second_evaluation_is_suppressed(self, now):
        aggregator = StruggleAggregator()
        first = aggregator.evaluate(all_signals(), no_proficiency, now)
        second = aggregator.evaluate(all_signals(), no_proficiency, now + timedelta(seconds=1))

        assert first.decision is not None
        assert second.decision is None
        assert second.suppressed

    def test_margin_must_be_exceeded(self, now):
        aggregator = StruggleAggregator()
        base = [signal(SignalType.ERROR_CYCLE), signal(SignalType.REPEATED_EDITS)]

        assert aggregator.evaluate(base + [signal(SignalType.LONG_PAUSE, 0.75)], no_proficiency, now).decision
        # 0.75 is within 0.1 of 0.70
        assert aggregator.evaluate(base + [signal(SignalType.LONG_PAUSE)], no_proficiency, now).suppressed
        stronger = base + [signal(SignalType.LONG_PAUSE), signal(SignalType.FREQUENT_SEARCH, 2 / 3)]
        assert aggregator.evaluate(stronger, no_proficiency, now).decision is not None

    def test_other_node_is_not_suppressed(self, now):
        aggregator = StruggleAggregator()
        aggregator.evaluate(all_signals("a"), no_proficiency, now)
        assert aggregator.evaluate(all_signals("b"), no_proficiency, now).decision is not None

    def test_reset_session(self, now):
        aggregator = StruggleAggregator()
        aggregator.evaluate(all_signals(), no_proficiency, now)
        aggregator.reset_session()
        assert aggregator.raised == {}
        assert aggregator.evaluate(all_signals(), no_proficiency, now).decision is not None


class TestDecision:
    def test_validity_horizon(self, now):
        decision = StruggleAggregator().evaluate(all_signals(), no_proficiency, now).decision

        assert decision.expires_at == now + timedelta(seconds=120)
        assert not decision.is_expired(now + timedelta(seconds=119))
        assert decision.is_expired(now + timedelta(seconds=120))

    def test_decisions_have_unique_ids(self, now):
        first = StruggleAggregator().evaluate(all_signals(), no_proficiency, now).decision
        second = StruggleAggregator().evaluate(all_signals(), no_proficiency, now).decision
        assert first.decision_id != second.decision_id

    def test_to_dict(self, now):
        decision = StruggleAggregator().evaluate(all_signals(), no_proficiency, now).decision
        data = decision.to_dict()
        assert data["node_id"] == "reducer"
        assert len(data["signals"]) == 5


class TestAggregatorConfig:
    def test_missing_multiplier_rejected(self):
        with pytest.raises(ConfigurationError):
            AggregatorConfig(multipliers={InterventionFrequency.BALANCED: 1.0})

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            AggregatorConfig(weights={SignalType.ERROR_CYCLE: -0.3})

    def test_from_settings(self):
        config = AggregatorConfig.from_settings(
            Settings(intervention_frequency="aggressive", intervention_threshold=0.5)
        )
        assert config.frequency is InterventionFrequency.AGGRESSIVE
        assert config.threshold == pytest.approx(0.35)
        assert config.weights[SignalType.ERROR_CYCLE] == pytest.approx(0.30)


class TestDeterminism:
    """The same ordered window and config always produce the same score."""

    @pytest.fixture
    def busy_window(self, make_event):
        events = [make_event("file_open", f"n{i % 100}", seconds=i * 0.5) for i in range(490)]
        events += [make_event("edit", "Form.tsx", seconds=250 + i * 10) for i in range(5)]
        return tuple(events)

    def test_repeated_parallel_runs_agree(self, busy_window, now):
        context = DetectionContext(now=now + timedelta(seconds=300))
        config = DetectorConfig()
        aggregator = StruggleAggregator()

        with ThreadPoolExecutor(max_workers=len(DETECTORS)) as pool:
            first = run_detectors(busy_window, context, config, executor=pool, timeout=0.5)
            second = run_detectors(busy_window, context, config, executor=pool, timeout=0.5)

        assert first.timed_out == second.timed_out == []
        assert first.signals == second.signals
        assert {s.signal_type for s in first.signals} == {
            SignalType.REPEATED_EDITS,
            SignalType.CONTEXT_SWITCHING,
        }
        assert aggregator.score(first.signals) == aggregator.score(second.signals)

    def test_engine_evaluation_is_repeatable(self, busy_window, now):
        engine = MentalModelEngine(
            "repeatable",
            settings=Settings(),
            learning_interface=CollectingInterface(),
            pruning_config=PruningConfig(interval=timedelta(0)),
            asynchronous_delivery=False,
        )
        try:
            engine.window.extend(busy_window)
            at = now + timedelta(seconds=300)
            first = engine._evaluate(at)
            second = engine._evaluate(at)
        finally:
            engine.close()

        assert first.score == second.score
        assert first.signals == second.signals
        assert first.candidate == second.candidate
        assert engine.metrics_snapshot()["detector_timeouts"] == 0
