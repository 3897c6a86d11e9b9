# ==============================================================================
# Batch Scoring
# ==============================================================================
#
# Runs a trained TabularMLP over a Ray Dataset on the cluster.
#
# Output columns:
#   - Classification: predict (level) + p_<level> (class probabilities)
#   - Regression:     predict (float)
#   - Optionally the target column, kept alongside for metric computation
#
# Rows keep their input order (the session enables preserve_order on the
# Ray Data context), so the result has exactly one row per input row.
#
# ==============================================================================

from typing import Dict, List

import numpy as np
import pandas as pd
import torch
from ray.data import Dataset

from src.training.data import encode_features
from src.training.model import TabularMLP
from src.training.schemas import FeatureSpec


def probability_columns(spec: FeatureSpec) -> List[str]:
    return [f"p_{level}" for level in spec.domain]


def predict_frame(
    model: TabularMLP, spec: FeatureSpec, frame: pd.DataFrame
) -> pd.DataFrame:
    """Score a pandas frame in-process."""
    features = torch.from_numpy(encode_features(frame, spec))
    with torch.no_grad():
        out = model(features)

    result: Dict[str, np.ndarray | List[str]] = {}
    if spec.is_classification:
        probs = torch.softmax(out, dim=1).numpy().astype(np.float64)
        classes = probs.argmax(axis=1)
        result["predict"] = [spec.domain[i] for i in classes]
        for j, name in enumerate(probability_columns(spec)):
            result[name] = probs[:, j]
    else:
        result["predict"] = out.numpy().astype(np.float64)
    return pd.DataFrame(result, index=frame.index)


class BatchScorer:
    """Callable class for ``Dataset.map_batches``; holds the model per actor."""

    def __init__(
        self, model: TabularMLP, spec: FeatureSpec, keep_columns: List[str] | None = None
    ):
        self.model = model.cpu().eval()
        self.spec = spec
        self.keep_columns = keep_columns or []

    def __call__(self, batch: pd.DataFrame) -> pd.DataFrame:
        scored = predict_frame(self.model, self.spec, batch)
        for column in self.keep_columns:
            scored[column] = batch[column].to_numpy()
        return scored.reset_index(drop=True)


def score_dataset(
    ds: Dataset,
    model: TabularMLP,
    spec: FeatureSpec,
    keep_columns: List[str] | None = None,
) -> Dataset:
    return ds.map_batches(
        BatchScorer,
        fn_constructor_kwargs={
            "model": model,
            "spec": spec,
            "keep_columns": keep_columns,
        },
        batch_format="pandas",
        concurrency=1,
    )
