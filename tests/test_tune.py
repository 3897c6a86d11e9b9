"""Grid expansion, random sampling and model ranking."""

from types import SimpleNamespace

import pytest
from ray import tune

from src.training.tune import expand_grid, rank_models, sample_variants


def test_grid_is_cartesian_product():
    variants = expand_grid({"hidden": [[10], [20, 20], [5]], "l1": [0.0, 1e-4]})
    assert len(variants) == 6
    assert variants[0] == {"hidden": [10], "l1": 0.0}
    assert variants[-1] == {"hidden": [5], "l1": 1e-4}


@pytest.mark.parametrize(
    "hyper_params", [{}, {"l1": []}, {"activation": "Tanh"}, {"l1": 0.1}]
)
def test_grid_rejects_malformed_candidates(hyper_params):
    with pytest.raises(ValueError):
        expand_grid(hyper_params)


def test_random_search_is_reproducible_with_seed():
    samplers = {
        "activation": ["Tanh", "Rectifier", "Maxout"],
        "l1": tune.uniform(0.0, 1e-4),
        "l2": tune.loguniform(1e-6, 1e-3),
        "epochs": tune.randint(1, 10),
        "hidden": lambda rng: [int(rng.integers(5, 50))] * 2,
    }
    first = sample_variants(samplers, trials=5, seed=42)
    second = sample_variants(samplers, trials=5, seed=42)
    assert first == second
    assert len(first) == 5

    for variant in first:
        assert variant["activation"] in samplers["activation"]
        assert 0.0 <= variant["l1"] <= 1e-4
        assert 1e-6 <= variant["l2"] <= 1e-3
        assert 1 <= variant["epochs"] < 10
        assert len(variant["hidden"]) == 2


def test_random_search_rejects_bad_samplers():
    with pytest.raises(ValueError, match="trials"):
        sample_variants({"l1": [0.0]}, trials=0)
    with pytest.raises(ValueError, match="Sampler"):
        sample_variants({"l1": 0.5}, trials=1)


def _model(name, **metrics):
    return SimpleNamespace(
        id=name,
        validation_metrics=SimpleNamespace(**metrics),
        training_metrics=None,
    )


def test_rank_models_direction():
    models = [_model("a", logloss=0.5, auc=0.7), _model("b", logloss=0.3, auc=0.9)]
    assert [m.id for m in rank_models(models, "logloss")] == ["b", "a"]
    assert [m.id for m in rank_models(models, "auc")] == ["b", "a"]
    assert [m.id for m in rank_models(models, "auc", decreasing=False)] == ["a", "b"]
