"""
File: hyperparameter_optimizer.py
Description: Discrete hyperparameter search for the habit prediction network.
Trials run strictly one after another. The first five sample the grid at random; the rest either keep
exploring (30%) or perturb one of the three best configurations found so far by one grid step per dimension.
This random/local-search hybrid approximates Bayesian optimization without a surrogate model.
A configuration is never evaluated twice within one run.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Set

import numpy as np

from .const import (
    LEARNING_RATE_SPACE,
    HIDDEN_LAYER_SIZE_SPACE,
    NUM_HIDDEN_LAYERS_SPACE,
    BATCH_SIZE_SPACE,
    DROPOUT_RATE_SPACE,
    NUM_TRIALS,
    RANDOM_TRIALS,
    SEARCH_EXPLORATION_RATE,
    TOP_CONFIGS,
    MAX_PERTURB_ATTEMPTS,
    MIN_TRIALS_FOR_IMPORTANCE,
    TRIAL_TIMEOUT_SECONDS,
)
from .errors import EvaluationTimeout
from .models import Hyperparameters, TrialResult

_LOGGER = logging.getLogger(__name__)

Evaluator = Callable[[Hyperparameters], Awaitable[float]]

DEFAULT_HYPERPARAMETERS = Hyperparameters(
    learning_rate=0.01,
    hidden_layer_sizes=(8,),
    batch_size=16,
    dropout_rate=0.2,
)

IMPORTANCE_KEYS = ["learning_rate", "hidden_layer_sizes", "batch_size", "dropout_rate"]


class HyperparameterOptimizer:
    """Sequential random + local search over the hyperparameter grid."""

    def __init__(self, rng: Optional[random.Random] = None, trial_timeout: float = TRIAL_TIMEOUT_SECONDS):
        self._rng = rng or random.Random()
        self.trial_timeout = trial_timeout

        self.current_trial = 0
        self.best_hyperparameters: Optional[Hyperparameters] = None
        self.trial_results: List[TrialResult] = []
        self._tried: Set[Hyperparameters] = set()
        self._stop_requested = False

    def request_stop(self):
        """Stop after the trial currently being evaluated."""
        self._stop_requested = True

    async def optimize_hyperparameters(self, evaluate: Evaluator) -> Hyperparameters:
        """
        Run up to NUM_TRIALS evaluations and return the best configuration.

        Args:
            evaluate: Coroutine function scoring a configuration (higher is better)

        Returns:
            Best configuration found, or the default configuration if no trial produced a score
        """
        self.current_trial = 0
        self.best_hyperparameters = None
        self.trial_results = []
        self._tried = set()
        self._stop_requested = False

        best_config = None
        best_score = float("-inf")

        for trial in range(1, NUM_TRIALS + 1):
            if self._stop_requested:
                _LOGGER.info("Hyperparameter search stopped after %d trials", trial - 1)
                break

            self.current_trial = trial
            if trial <= RANDOM_TRIALS:
                config = self._random_config()
            else:
                config = self._guided_config()

            try:
                score = await asyncio.wait_for(evaluate(config), timeout=self.trial_timeout)
            except asyncio.TimeoutError as err:
                raise EvaluationTimeout(
                    f"Trial {trial} did not finish within {self.trial_timeout}s"
                ) from err

            score = float(score)
            self.trial_results.append(TrialResult(trial=trial, hyperparameters=config, score=score))
            _LOGGER.debug("Trial %d: %s -> %.4f", trial, config, score)

            if score > best_score:
                best_score = score
                best_config = config
                self.best_hyperparameters = config

        if best_config is None:
            _LOGGER.warning("No trial improved on the initial score, using default hyperparameters")
            return DEFAULT_HYPERPARAMETERS

        _LOGGER.info("Best hyperparameters: %s (score %.4f)", best_config, best_score)
        return best_config

    # ==================== CANDIDATE GENERATION ====================

    def _random_config(self) -> Hyperparameters:
        while True:
            num_layers = self._rng.choice(NUM_HIDDEN_LAYERS_SPACE)
            config = Hyperparameters(
                learning_rate=self._rng.choice(LEARNING_RATE_SPACE),
                hidden_layer_sizes=tuple(self._rng.choice(HIDDEN_LAYER_SIZE_SPACE) for _ in range(num_layers)),
                batch_size=self._rng.choice(BATCH_SIZE_SPACE),
                dropout_rate=self._rng.choice(DROPOUT_RATE_SPACE),
            )
            if config not in self._tried:
                self._tried.add(config)
                return config

    def _guided_config(self) -> Hyperparameters:
        if not self.trial_results or self._rng.random() < SEARCH_EXPLORATION_RATE:
            return self._random_config()

        ranked = sorted(self.trial_results, key=lambda r: r.score, reverse=True)
        base = self._rng.choice(ranked[:TOP_CONFIGS]).hyperparameters

        for _ in range(MAX_PERTURB_ATTEMPTS):
            config = Hyperparameters(
                learning_rate=self._step(LEARNING_RATE_SPACE, base.learning_rate),
                hidden_layer_sizes=tuple(self._step(HIDDEN_LAYER_SIZE_SPACE, s) for s in base.hidden_layer_sizes),
                batch_size=self._step(BATCH_SIZE_SPACE, base.batch_size),
                dropout_rate=self._step(DROPOUT_RATE_SPACE, base.dropout_rate),
            )
            if config not in self._tried:
                self._tried.add(config)
                return config

        # Every neighbour tried, fall back to exploration
        return self._random_config()

    def _step(self, space: list, value):
        """Move one grid index down, up or nowhere, staying inside the grid."""
        index = space.index(value) + self._rng.randint(-1, 1)
        return space[max(0, min(len(space) - 1, index))]

    # ==================== REPORTING ====================

    def get_optimization_progress(self) -> float:
        return self.current_trial / NUM_TRIALS

    def get_hyperparameter_importance(self) -> Dict[str, float]:
        """
        Relative influence of each hyperparameter on the score.

        Absolute Pearson correlation against score, normalized to sum to 1.
        Hidden layer sizes are reduced to their mean. Fewer than five trials give uniform weights.
        """
        uniform = {key: 0.25 for key in IMPORTANCE_KEYS}
        if len(self.trial_results) < MIN_TRIALS_FOR_IMPORTANCE:
            return uniform

        scores = np.array([r.score for r in self.trial_results])
        columns = {
            "learning_rate": [r.hyperparameters.learning_rate for r in self.trial_results],
            "hidden_layer_sizes": [np.mean(r.hyperparameters.hidden_layer_sizes) for r in self.trial_results],
            "batch_size": [r.hyperparameters.batch_size for r in self.trial_results],
            "dropout_rate": [r.hyperparameters.dropout_rate for r in self.trial_results],
        }
        correlations = {key: abs(_correlation(np.array(values, dtype=float), scores)) for key, values in columns.items()}

        total = sum(correlations.values())
        if total == 0:
            return uniform

        return {key: value / total for key, value in correlations.items()}


def _correlation(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson correlation, 0 when either side has no variance."""
    x_diff = x - x.mean()
    y_diff = y - y.mean()
    denominator = np.sqrt(np.sum(x_diff ** 2) * np.sum(y_diff ** 2))
    if denominator == 0:
        return 0.0
    return float(np.sum(x_diff * y_diff) / denominator)
