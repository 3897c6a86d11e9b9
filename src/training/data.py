# ==============================================================================
# Feature Encoding Module
# ==============================================================================
#
# Turns tabular Ray Datasets into the dense tensors the network consumes.
#
# Key Features:
#   - Numeric columns: mean imputation + standardization (training statistics)
#   - Categorical columns: one-hot encoding over the training levels
#     (missing and unseen levels encode as all zeros)
#   - Target: level index (classification) or float (regression); rows with
#     a missing target are dropped
#
# Data Flow:
#   1. build_feature_spec() computes statistics on the training dataset
#   2. prepare_dataset() maps batches to {"features", "target"} on the cluster
#   3. The same FeatureSpec is reused by scoring and serving
#
# Usage:
#   spec = build_feature_spec(train_ds, columns, x=["x1", "x2"], y="label")
#   train_ds = prepare_dataset(train_ds, spec)
#
# ==============================================================================

import math
from typing import Dict, List, Mapping

import numpy as np
import pandas as pd
from ray.data import Dataset

from src._utils.logging import get_logger
from src.training.schemas import ColumnInfo, ColumnType, FeatureColumn, FeatureSpec

logger = get_logger(__name__)


def level_strings(values: pd.Series) -> pd.Series:
    """Render values as categorical level strings, keeping missing values as None."""
    return values.map(lambda v: None if _is_missing(v) else str(v)).astype(object)


def _is_missing(value) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _finite_or(value, default: float) -> float:
    if value is None:
        return default
    value = float(value)
    return value if math.isfinite(value) else default


def build_feature_spec(
    ds: Dataset,
    columns: Mapping[str, ColumnInfo],
    x: List[str],
    y: str,
    standardize: bool = True,
) -> FeatureSpec:
    """Compute the encoding of ``x``/``y`` from training data statistics."""
    features = []
    for name in x:
        info = columns[name]
        if info.is_categorical:
            features.append(
                FeatureColumn(
                    name=name, type=ColumnType.CATEGORICAL, levels=info.levels or []
                )
            )
            continue

        mean = _finite_or(ds.mean(name), 0.0)
        std = _finite_or(ds.std(name), 1.0)
        if std <= 0.0:
            std = 1.0
        features.append(
            FeatureColumn(name=name, type=ColumnType.NUMERIC, mean=mean, std=std)
        )

    spec = FeatureSpec(features=features, response=columns[y], standardize=standardize)
    logger.info(
        f"Feature spec: {len(spec.features)} columns -> {spec.input_dim} inputs, "
        f"{spec.category.value} on '{y}'"
    )
    return spec


def encode_features(frame: pd.DataFrame, spec: FeatureSpec) -> np.ndarray:
    """Encode the feature columns of ``frame`` into a float32 matrix."""
    n = len(frame)
    blocks = []
    for col in spec.features:
        values = frame[col.name]
        if col.type == ColumnType.CATEGORICAL:
            codes = pd.Categorical(level_strings(values), categories=col.levels).codes
            block = np.zeros((n, len(col.levels)), dtype=np.float32)
            rows = np.flatnonzero(codes >= 0)
            block[rows, codes[rows]] = 1.0
        else:
            numeric = pd.to_numeric(values, errors="coerce").astype(np.float64)
            numeric = numeric.fillna(col.mean).to_numpy()
            if spec.standardize:
                numeric = (numeric - col.mean) / col.std
            block = numeric.astype(np.float32).reshape(n, 1)
        blocks.append(block)

    if not blocks:
        return np.zeros((n, 0), dtype=np.float32)
    return np.concatenate(blocks, axis=1)


def encode_target(values: pd.Series, spec: FeatureSpec) -> np.ndarray:
    """Encode target values; missing entries are -1 (classes) or NaN (regression)."""
    if spec.is_classification:
        codes = pd.Categorical(level_strings(values), categories=spec.domain).codes
        return codes.astype(np.int64)
    return pd.to_numeric(values, errors="coerce").to_numpy(dtype=np.float32)


def target_mask(target: np.ndarray, spec: FeatureSpec) -> np.ndarray:
    if spec.is_classification:
        return target >= 0
    return ~np.isnan(target)


def encode_batch(batch: pd.DataFrame, spec: FeatureSpec) -> Dict[str, np.ndarray]:
    """Ray Data batch UDF producing network inputs and targets."""
    target = encode_target(batch[spec.response.name], spec)
    keep = target_mask(target, spec)
    batch = batch.loc[keep]
    return {"features": encode_features(batch, spec), "target": target[keep]}


def prepare_dataset(ds: Dataset, spec: FeatureSpec) -> Dataset:
    """Encode a dataset for training (runs on the cluster)."""
    columns = spec.feature_names + [spec.response.name]
    return ds.select_columns(columns).map_batches(
        encode_batch,
        fn_kwargs={"spec": spec},
        batch_format="pandas",
    )
