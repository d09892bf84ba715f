"""
Tests for hyperparameter_optimizer.py

Covers:
- Sequential trials and progress tracking
- Best configuration selection and default fallback
- No configuration evaluated twice
- Grid membership of every sampled configuration
- Evaluation timeout and cooperative stop
- Hyperparameter importance
"""
import asyncio
import random

import pytest

from custom_components.habit_coach.const import (
    LEARNING_RATE_SPACE,
    HIDDEN_LAYER_SIZE_SPACE,
    NUM_HIDDEN_LAYERS_SPACE,
    BATCH_SIZE_SPACE,
    DROPOUT_RATE_SPACE,
)
from custom_components.habit_coach.errors import EvaluationTimeout
from custom_components.habit_coach.hyperparameter_optimizer import (
    DEFAULT_HYPERPARAMETERS,
    HyperparameterOptimizer,
)
from custom_components.habit_coach.models import Hyperparameters, TrialResult


def make_optimizer(seed=11, **kwargs):
    return HyperparameterOptimizer(random.Random(seed), **kwargs)


async def score_by_learning_rate(config: Hyperparameters) -> float:
    return config.learning_rate


# ─────────────────────────────────────────────────────────────────────────────
# Search loop
# ─────────────────────────────────────────────────────────────────────────────

class TestOptimize:

    @pytest.mark.asyncio
    async def test_runs_ten_trials(self):
        optimizer = make_optimizer()
        await optimizer.optimize_hyperparameters(score_by_learning_rate)

        assert len(optimizer.trial_results) == 10
        assert [r.trial for r in optimizer.trial_results] == list(range(1, 11))
        assert optimizer.get_optimization_progress() == 1.0

    @pytest.mark.asyncio
    async def test_returns_best_scoring_config(self):
        optimizer = make_optimizer()
        best = await optimizer.optimize_hyperparameters(score_by_learning_rate)

        top_score = max(r.score for r in optimizer.trial_results)
        assert best.learning_rate == top_score
        assert optimizer.best_hyperparameters == best

    @pytest.mark.asyncio
    async def test_first_best_wins_ties(self):
        async def constant(config):
            return 0.5

        optimizer = make_optimizer()
        best = await optimizer.optimize_hyperparameters(constant)

        assert best == optimizer.trial_results[0].hyperparameters

    @pytest.mark.asyncio
    async def test_no_config_evaluated_twice(self):
        for seed in range(5):
            optimizer = make_optimizer(seed)
            await optimizer.optimize_hyperparameters(score_by_learning_rate)

            configs = [r.hyperparameters for r in optimizer.trial_results]
            assert len(set(configs)) == len(configs)

    @pytest.mark.asyncio
    async def test_configs_stay_on_the_grid(self):
        optimizer = make_optimizer()
        await optimizer.optimize_hyperparameters(score_by_learning_rate)

        for result in optimizer.trial_results:
            config = result.hyperparameters
            assert config.learning_rate in LEARNING_RATE_SPACE
            assert len(config.hidden_layer_sizes) in NUM_HIDDEN_LAYERS_SPACE
            assert all(size in HIDDEN_LAYER_SIZE_SPACE for size in config.hidden_layer_sizes)
            assert config.batch_size in BATCH_SIZE_SPACE
            assert config.dropout_rate in DROPOUT_RATE_SPACE

    @pytest.mark.asyncio
    async def test_trials_run_sequentially(self):
        running = 0
        peak = 0

        async def evaluate(config):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            running -= 1
            return 0.1

        await make_optimizer().optimize_hyperparameters(evaluate)
        assert peak == 1

    @pytest.mark.asyncio
    async def test_default_when_nothing_scores(self):
        async def never_better(config):
            return float("-inf")

        optimizer = make_optimizer()
        assert await optimizer.optimize_hyperparameters(never_better) == DEFAULT_HYPERPARAMETERS


# ─────────────────────────────────────────────────────────────────────────────
# Timeout & stop
# ─────────────────────────────────────────────────────────────────────────────

class TestInterruption:

    @pytest.mark.asyncio
    async def test_slow_evaluation_raises_timeout(self):
        async def slow(config):
            await asyncio.sleep(1)
            return 1.0

        optimizer = make_optimizer(trial_timeout=0.01)
        with pytest.raises(EvaluationTimeout):
            await optimizer.optimize_hyperparameters(slow)

    @pytest.mark.asyncio
    async def test_stop_request_ends_after_current_trial(self):
        optimizer = make_optimizer()

        async def evaluate(config):
            if optimizer.current_trial == 3:
                optimizer.request_stop()
            return 0.2

        await optimizer.optimize_hyperparameters(evaluate)

        assert len(optimizer.trial_results) == 3
        assert optimizer.get_optimization_progress() == pytest.approx(0.3)


# ─────────────────────────────────────────────────────────────────────────────
# Guided candidates
# ─────────────────────────────────────────────────────────────────────────────

class TestCandidateGeneration:

    def test_step_is_bounded_by_grid(self):
        optimizer = make_optimizer()
        for _ in range(50):
            assert optimizer._step(BATCH_SIZE_SPACE, 8) in (8, 16)
            assert optimizer._step(BATCH_SIZE_SPACE, 64) in (32, 64)

    def test_exhausted_neighbourhood_falls_back_to_random(self):
        optimizer = make_optimizer()
        base = Hyperparameters(0.001, (4,), 8, 0.0)
        optimizer.trial_results = [TrialResult(1, base, 1.0)]

        # Every neighbour of the base has already been tried
        for lr in LEARNING_RATE_SPACE[:2]:
            for size in HIDDEN_LAYER_SIZE_SPACE[:2]:
                for batch in BATCH_SIZE_SPACE[:2]:
                    for dropout in DROPOUT_RATE_SPACE[:2]:
                        optimizer._tried.add(Hyperparameters(lr, (size,), batch, dropout))

        config = optimizer._guided_config()
        assert config in optimizer._tried
        assert config not in {
            Hyperparameters(lr, (size,), batch, dropout)
            for lr in LEARNING_RATE_SPACE[:2]
            for size in HIDDEN_LAYER_SIZE_SPACE[:2]
            for batch in BATCH_SIZE_SPACE[:2]
            for dropout in DROPOUT_RATE_SPACE[:2]
        }


# ─────────────────────────────────────────────────────────────────────────────
# Importance
# ─────────────────────────────────────────────────────────────────────────────

class TestImportance:

    def test_uniform_below_five_trials(self):
        optimizer = make_optimizer()
        optimizer.trial_results = [
            TrialResult(i, Hyperparameters(0.01, (8,), 16, 0.2), 0.5) for i in range(4)
        ]
        assert optimizer.get_hyperparameter_importance() == {
            "learning_rate": 0.25,
            "hidden_layer_sizes": 0.25,
            "batch_size": 0.25,
            "dropout_rate": 0.25,
        }

    def test_uniform_when_nothing_correlates(self):
        optimizer = make_optimizer()
        optimizer.trial_results = [
            TrialResult(i, Hyperparameters(0.01, (8,), 16, 0.2), 0.5) for i in range(6)
        ]
        assert set(optimizer.get_hyperparameter_importance().values()) == {0.25}

    def test_correlated_parameter_dominates(self):
        optimizer = make_optimizer()
        optimizer.trial_results = [
            TrialResult(i, Hyperparameters(lr, (8,), 16, 0.2), lr * 10)
            for i, lr in enumerate(LEARNING_RATE_SPACE)
        ]

        importance = optimizer.get_hyperparameter_importance()

        assert importance["learning_rate"] == pytest.approx(1.0)
        assert sum(importance.values()) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_weights_sum_to_one_after_search(self):
        optimizer = make_optimizer()
        await optimizer.optimize_hyperparameters(score_by_learning_rate)
        assert sum(optimizer.get_hyperparameter_importance().values()) == pytest.approx(1.0)
