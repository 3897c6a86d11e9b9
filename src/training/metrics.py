# ==============================================================================
# Model Metrics
# ==============================================================================
#
# Builds MetricsSummary objects from scored frames using torchmetrics.
#
# Classification (Binomial / Multinomial):
#   confusion matrix, accuracy, log-loss, mean per-class error, MSE on the
#   probability of the actual class, AUC (binomial only)
#
# Regression:
#   MSE, RMSE, MAE, R², mean residual deviance (squared error)
#
# Rows whose actual value is missing (or an unseen level) are ignored.
#
# ==============================================================================

import math

import numpy as np
import pandas as pd
import torch
from torchmetrics.functional import mean_absolute_error, mean_squared_error, r2_score
from torchmetrics.functional.classification import (
    binary_auroc,
    multiclass_confusion_matrix,
)

from src.training.data import encode_target, target_mask
from src.training.schemas import (
    ConfusionMatrix,
    FeatureSpec,
    MetricsSummary,
    ModelCategory,
)
from src.training.scoring import probability_columns

_EPS = 1e-15


def compute_metrics(scored: pd.DataFrame, spec: FeatureSpec) -> MetricsSummary:
    """Summarize predictions in ``scored`` against its target column."""
    actual = encode_target(scored[spec.response.name], spec)
    mask = target_mask(actual, spec)
    if not mask.any():
        raise ValueError(f"No rows with a known value of '{spec.response.name}'")

    if spec.is_classification:
        probs = scored[probability_columns(spec)].to_numpy(dtype=np.float64)[mask]
        return classification_metrics(probs, actual[mask], spec)

    predicted = scored["predict"].to_numpy(dtype=np.float64)[mask]
    return regression_metrics(predicted, actual[mask].astype(np.float64))


def classification_metrics(
    probs: np.ndarray, actual: np.ndarray, spec: FeatureSpec
) -> MetricsSummary:
    num_classes = len(spec.domain)
    nobs = len(actual)
    target = torch.from_numpy(actual.astype(np.int64))
    preds = torch.from_numpy(probs.argmax(axis=1))

    cm = multiclass_confusion_matrix(preds, target, num_classes=num_classes)
    cm = cm.to(torch.int64)
    correct = int(torch.diagonal(cm).sum())

    p_actual = probs[np.arange(nobs), actual]
    logloss = float(-np.mean(np.log(np.clip(p_actual, _EPS, 1.0))))
    mse = float(np.mean((1.0 - p_actual) ** 2))

    per_class = cm.sum(dim=1)
    present = per_class > 0
    recall = torch.diagonal(cm)[present].double() / per_class[present].double()
    mean_per_class_error = float((1.0 - recall).mean())

    auc = None
    if spec.category == ModelCategory.BINOMIAL and 0 < target.sum() < nobs:
        auc = float(binary_auroc(torch.from_numpy(probs[:, 1]), target))

    return MetricsSummary(
        model_category=spec.category,
        nobs=nobs,
        mse=mse,
        rmse=math.sqrt(mse),
        logloss=logloss,
        accuracy=correct / nobs,
        mean_per_class_error=mean_per_class_error,
        auc=auc,
        confusion_matrix=ConfusionMatrix(domain=spec.domain, matrix=cm.tolist()),
    )


def regression_metrics(predicted: np.ndarray, actual: np.ndarray) -> MetricsSummary:
    preds = torch.from_numpy(predicted)
    target = torch.from_numpy(actual)

    mse = float(mean_squared_error(preds, target))
    r2 = float(r2_score(preds, target)) if len(actual) > 1 else None
    if r2 is not None and not math.isfinite(r2):
        r2 = None  # constant target
    return MetricsSummary(
        model_category=ModelCategory.REGRESSION,
        nobs=len(actual),
        mse=mse,
        rmse=math.sqrt(mse),
        mae=float(mean_absolute_error(preds, target)),
        r2=r2,
        mean_residual_deviance=mse,
    )
