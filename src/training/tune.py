# ==============================================================================
# Hyperparameter Search
# ==============================================================================
#
# Expansion of hyperparameter search spaces into concrete fit configurations.
#
# Strategies:
#   - Grid search: Cartesian product of candidate lists, in declaration order
#   - Random search: `trials` independent draws, one per option, from
#       * a list / tuple            -> uniform discrete choice
#       * a Ray Tune domain         -> tune.uniform, tune.loguniform,
#                                      tune.choice, tune.randint, ...
#       * a callable(rng)           -> custom sampler on a NumPy Generator
#
# Every expanded configuration is merged over the fixed options and validated
# by the session before the first fit is submitted.
#
# Usage:
#   variants = expand_grid({"hidden": [[32], [64, 64]], "l1": [0, 1e-5]})
#   variants = sample_variants({"l2": tune.loguniform(1e-6, 1e-3)}, trials=5, seed=1)
#
# ==============================================================================

import itertools
from typing import Any, Callable, Dict, List, Mapping, Sequence

import numpy as np
from ray.tune.search.sample import Domain


def expand_grid(hyper_params: Mapping[str, Sequence[Any]]) -> List[Dict[str, Any]]:
    """Cartesian product of candidate values, one dict per combination."""
    if not hyper_params:
        raise ValueError("hyper_params must name at least one option")

    names = list(hyper_params)
    candidates = []
    for name in names:
        values = hyper_params[name]
        if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
            raise ValueError(f"Candidates for '{name}' must be a list of values")
        if len(values) == 0:
            raise ValueError(f"Candidates for '{name}' must not be empty")
        candidates.append(list(values))

    return [dict(zip(names, combo)) for combo in itertools.product(*candidates)]


def _draw(name: str, sampler: Any, rng: np.random.Generator) -> Any:
    if isinstance(sampler, Domain):
        value = sampler.sample(random_state=rng)
        return value.item() if isinstance(value, np.generic) else value
    if isinstance(sampler, (list, tuple)):
        if not sampler:
            raise ValueError(f"Candidates for '{name}' must not be empty")
        return sampler[int(rng.integers(len(sampler)))]
    if callable(sampler):
        return sampler(rng)
    raise ValueError(
        f"Sampler for '{name}' must be a list, a Ray Tune domain or a callable, "
        f"got {type(sampler).__name__}"
    )


def sample_variants(
    samplers: Mapping[str, Any | Callable[[np.random.Generator], Any]],
    trials: int,
    seed: int | None = None,
) -> List[Dict[str, Any]]:
    """Draw ``trials`` independent configurations from ``samplers``."""
    if not samplers:
        raise ValueError("samplers must name at least one option")
    if trials < 1:
        raise ValueError(f"trials must be positive, got {trials}")

    rng = np.random.default_rng(seed)
    return [
        {name: _draw(name, sampler, rng) for name, sampler in samplers.items()}
        for _ in range(trials)
    ]


# Metrics where larger is better
_DECREASING = {"accuracy", "auc", "r2"}


def rank_models(models: Sequence, metric: str, decreasing: bool | None = None) -> list:
    """Sort model handles by a validation (else training) metric."""
    if decreasing is None:
        decreasing = metric in _DECREASING

    def key(model):
        summary = model.validation_metrics or model.training_metrics
        value = getattr(summary, metric, None) if summary else None
        if value is None:
            return float("inf")
        return -value if decreasing else value

    return sorted(models, key=key)
