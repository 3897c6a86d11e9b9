# ==============================================================================
# Deep Learning Walkthrough
# ==============================================================================
#
# End-to-end tour of the session client:
#   1. Connect to (or start) a Ray cluster
#   2. Import a dataset (or generate a synthetic one) and split it
#   3. Fit a model, inspect metrics and variable importances
#   4. Continue training from a checkpoint
#   5. Grid search and random search over hyperparameters
#   6. Cross-validation
#   7. Save, load and compare predictions
#
# Usage:
#   python -m src.walkthrough --help
#   python -m src.walkthrough --data data/covtype.csv --response Cover_Type
#
# ==============================================================================

import argparse
import tempfile

import numpy as np
import pandas as pd
from ray import tune

from src._utils.logging import get_logger, log_section
from src.session import connect
from src.training.tune import rank_models

logger = get_logger(__name__)


def synthetic_frame(rows: int, seed: int) -> pd.DataFrame:
    """Two interleaved spirals with a noise column and a categorical feature."""
    rng = np.random.default_rng(seed)
    t = rng.uniform(0.5, 3 * np.pi, size=rows)
    arm = rng.integers(0, 2, size=rows)
    sign = np.where(arm == 0, 1.0, -1.0)
    return pd.DataFrame(
        {
            "x": sign * t * np.cos(t) + rng.normal(0, 0.3, rows),
            "y": sign * t * np.sin(t) + rng.normal(0, 0.3, rows),
            "noise": rng.normal(size=rows),
            "quadrant": np.where(rng.random(rows) < 0.5, "north", "south"),
            "label": np.where(arm == 0, "a", "b"),
        }
    )


def main():
    """Main entry point for the walkthrough."""
    parser = argparse.ArgumentParser(description="Deep Learning Session Walkthrough")
    parser.add_argument("--address", type=str, default=None)
    parser.add_argument("--threads", type=int, default=-1)
    parser.add_argument("--memory", type=str, default=None)
    parser.add_argument("--data", type=str, default=None, help="CSV/Parquet/JSON file")
    parser.add_argument("--response", type=str, default="label")
    parser.add_argument("--rows", type=int, default=2000)
    parser.add_argument("--epochs", type=int, default=5)
    parser.add_argument("--seed", type=int, default=1234)
    parser.add_argument("--output", type=str, default=None)
    args = parser.parse_args()

    with connect(args.address, args.threads, args.memory) as session:
        log_section("Data", "📦")
        if args.data:
            data = session.import_dataset(
                args.data, column_types={args.response: "categorical"}
            )
        else:
            data = session.upload_dataframe(synthetic_frame(args.rows, args.seed))
        logger.info(f"\n{session.describe(data)}")

        train, valid, test = session.split(data, [0.6, 0.2], seed=args.seed)
        x = [name for name in data.names if name != args.response]

        log_section("First model", "🧠")
        base = {
            "x": x,
            "y": args.response,
            "hidden": [64, 64],
            "activation": "Rectifier",
            "epochs": args.epochs,
            "seed": args.seed,
        }
        model = session.fit("deeplearning", {**base, "model_id": "dl_first"}, train, valid)
        logger.info(f"Training: {model.training_metrics}")
        logger.info(f"Validation: {model.validation_metrics}")
        logger.info(f"Test: {session.performance(model, test)}")
        for item in session.varimp(model):
            logger.info(f"   {item.variable:>12}  {item.percentage:6.1%}")

        log_section("Checkpoint continuation", "📂")
        continued = session.fit(
            "deeplearning",
            {**base, "epochs": args.epochs * 2, "checkpoint": model.id},
            train,
            valid,
        )
        logger.info(f"{continued!r} continued from {continued.checkpoint_of}")

        log_section("Grid search", "🔎")
        grid = session.grid_search(
            "deeplearning",
            {"hidden": [[32, 32], [64, 64]], "l1": [0.0, 1e-5]},
            base,
            train,
            valid,
        )
        best = rank_models(grid, "logloss")[0]
        logger.success(f"Best grid model: {best.id} {best.parameters['hidden']}")

        log_section("Random search", "🎲")
        models = session.random_search(
            "deeplearning",
            {
                "activation": ["Rectifier", "Tanh", "Maxout"],
                "hidden": [[32], [32, 32], [64, 64]],
                "l1": tune.uniform(0.0, 1e-4),
                "l2": tune.loguniform(1e-6, 1e-3),
            },
            {k: v for k, v in base.items() if k not in ("activation", "hidden")},
            trials=3,
            training_data=train,
            validation_data=valid,
            seed=args.seed,
        )
        best = rank_models(models, "logloss")[0]
        logger.success(f"Best random model: {best.id} ({best.parameters['activation']})")

        log_section("Cross-validation", "🔁")
        cv_model = session.fit("deeplearning", {**base, "nfolds": 3}, train)
        logger.info(f"Cross-validation: {cv_model.cross_validation_metrics}")

        log_section("Save and load", "💾")
        output = args.output or tempfile.mkdtemp(prefix="dl_models_")
        path = session.save(model, output, force=True)
        loaded = session.load(path)
        before = session.head(session.predict(model, test), test.nrows)
        after = session.head(session.predict(loaded, test), test.nrows)
        logger.success(f"Identical predictions after reload: {before.equals(after)}")


if __name__ == "__main__":
    main()
