# ==============================================================================
# Dataset Operations
# ==============================================================================
#
# Ray Data helpers behind the session's dataset handles.
#
# Key Features:
#   - Reading CSV / Parquet / JSON from local paths, s3:// URLs or DVC repos
#   - Column type inference (numbers -> numeric, everything else -> categorical)
#   - Categorical columns stored as level strings with sorted level lists
#   - Seeded splits and fold assignment for cross-validation
#   - Column summaries (describe)
#
# Data Flow:
#   1. read_dataset() / ray.data.from_pandas() give a raw Ray Dataset
#   2. normalize_columns() applies types and returns (dataset, ColumnInfo list)
#   3. The session registers the pair behind a DatasetHandle
#
# ==============================================================================

import os
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

import dvc.api
import dvc.exceptions
import numpy as np
import pandas as pd
import pyarrow as pa
import ray
import s3fs
from pyarrow.fs import FSSpecHandler, PyFileSystem
from ray.data import Dataset

from src._utils.logging import get_logger
from src.session import errors
from src.training.data import level_strings
from src.training.schemas import ColumnInfo, ColumnType

logger = get_logger(__name__)

_FORMATS = {
    ".csv": "csv",
    ".parquet": "parquet",
    ".pq": "parquet",
    ".json": "json",
    ".jsonl": "json",
}


# ============================================== #
# 🔹 SECTION: Reading
# ============================================== #
def infer_format(path: str) -> str:
    suffixes = Path(path.rstrip("/")).suffixes
    for suffix in reversed(suffixes):
        fmt = _FORMATS.get(suffix.lower())
        if fmt:
            return fmt
    raise errors.ValidationError(
        f"Cannot infer the format of '{path}'; pass format= one of "
        f"{sorted(set(_FORMATS.values()))}"
    )


def resolve_dvc_path(path: str, repo: str, rev: str | None = None) -> str:
    """Resolve a DVC-tracked path to its storage URL."""
    logger.info(f"DVC repo: [cyan]{repo}[/cyan] (rev: {rev or 'HEAD'})")
    try:
        return dvc.api.get_url(path, repo=repo, rev=rev)
    except dvc.exceptions.PathMissingError as e:
        raise errors.NotFoundError(f"'{path}' is not tracked in {repo}: {e}") from e


def _s3_filesystem() -> s3fs.S3FileSystem:
    endpoint = os.getenv("AWS_ENDPOINT_URL")
    return s3fs.S3FileSystem(
        anon=False,
        key=os.getenv("AWS_ACCESS_KEY_ID"),
        secret=os.getenv("AWS_SECRET_ACCESS_KEY"),
        client_kwargs={"endpoint_url": endpoint} if endpoint else None,
    )


def read_dataset(path: str, format: str | None = None) -> Dataset:
    """Read a file or directory into a Ray Dataset."""
    fmt = (format or infer_format(path)).lower()
    if fmt not in set(_FORMATS.values()):
        raise errors.ValidationError(f"Unsupported format '{format}'")

    filesystem = None
    if path.startswith("s3://"):
        s3 = _s3_filesystem()
        if not s3.exists(path):
            raise errors.NotFoundError(f"Path does not exist: {path}")
        filesystem = PyFileSystem(FSSpecHandler(s3))
        path = path.removeprefix("s3://")
    elif not Path(path).expanduser().exists():
        raise errors.NotFoundError(f"Path does not exist: {path}")
    else:
        path = str(Path(path).expanduser().resolve())

    logger.info(f"Reading {fmt} data from [cyan]{path}[/cyan]")
    if fmt == "csv":
        return ray.data.read_csv(path, filesystem=filesystem)
    if fmt == "parquet":
        return ray.data.read_parquet(path, filesystem=filesystem)
    return ray.data.read_json(path, filesystem=filesystem)


# ============================================== #
# 🔹 SECTION: Column Types
# ============================================== #
def _is_numeric_type(dtype) -> bool:
    if isinstance(dtype, pa.DataType):
        return pa.types.is_integer(dtype) or pa.types.is_floating(dtype)
    try:
        return np.dtype(dtype).kind in "iuf"
    except TypeError:
        return False


def infer_column_types(ds: Dataset) -> Dict[str, ColumnType]:
    schema = ds.schema()
    return {
        name: ColumnType.NUMERIC if _is_numeric_type(dtype) else ColumnType.CATEGORICAL
        for name, dtype in zip(schema.names, schema.types)
    }


def _convert_batch(
    batch: pd.DataFrame, categorical: List[str], numeric: List[str]
) -> pd.DataFrame:
    for name in categorical:
        batch[name] = level_strings(batch[name])
    for name in numeric:
        batch[name] = pd.to_numeric(batch[name], errors="coerce").astype(np.float64)
    return batch


def column_levels(ds: Dataset, name: str) -> List[str]:
    return sorted(v for v in ds.unique(name) if v is not None)


def normalize_columns(
    ds: Dataset,
    column_types: Mapping[str, ColumnType | str] | None = None,
) -> Tuple[Dataset, List[ColumnInfo]]:
    """Apply inferred and overridden column types.

    Args:
        ds: Raw dataset as read from storage
        column_types: Optional overrides, e.g. ``{"label": "categorical"}``

    Returns:
        Tuple of (converted dataset, column descriptions in schema order)
    """
    inferred = infer_column_types(ds)
    overrides = {}
    for name, value in (column_types or {}).items():
        if name not in inferred:
            raise errors.ValidationError(f"Unknown column '{name}' in column_types")
        try:
            overrides[name] = ColumnType(str(value).lower())
        except ValueError:
            raise errors.ValidationError(
                f"Column type of '{name}' must be 'numeric' or 'categorical', "
                f"got {value!r}"
            ) from None

    types = {**inferred, **overrides}
    categorical = [n for n, t in types.items() if t == ColumnType.CATEGORICAL]
    numeric = [
        n
        for n, t in overrides.items()
        if t == ColumnType.NUMERIC and inferred[n] != ColumnType.NUMERIC
    ]

    if categorical or numeric:
        ds = ds.map_batches(
            _convert_batch,
            fn_kwargs={"categorical": categorical, "numeric": numeric},
            batch_format="pandas",
        )
    ds = ds.materialize()

    columns = [
        ColumnInfo(
            name=name,
            type=kind,
            levels=column_levels(ds, name) if kind == ColumnType.CATEGORICAL else None,
        )
        for name, kind in types.items()
    ]
    return ds, columns


def to_factor(ds: Dataset, name: str) -> Tuple[Dataset, List[str]]:
    """Convert one column to level strings; returns (dataset, levels)."""
    ds = ds.map_batches(
        _convert_batch,
        fn_kwargs={"categorical": [name], "numeric": []},
        batch_format="pandas",
    ).materialize()
    return ds, column_levels(ds, name)


# ============================================== #
# 🔹 SECTION: Splitting
# ============================================== #
def split_boundaries(nrows: int, ratios: Sequence[float]) -> List[int]:
    """Row indices where each split ends, from cumulative ratios."""
    if not ratios:
        raise errors.ValidationError("ratios must not be empty")
    if any(r <= 0 for r in ratios):
        raise errors.ValidationError(f"ratios must be positive, got {list(ratios)}")
    if sum(ratios) > 1.0 + 1e-9:
        raise errors.ValidationError(f"ratios must sum to at most 1, got {sum(ratios)}")

    boundaries = []
    cumulative = 0.0
    for ratio in ratios:
        cumulative += ratio
        boundaries.append(min(nrows, int(round(cumulative * nrows))))
    return boundaries


def split_dataset(
    ds: Dataset, nrows: int, ratios: Sequence[float], seed: int | None = None
) -> List[Dataset]:
    """Shuffle once and cut into ``len(ratios) + 1`` parts."""
    boundaries = split_boundaries(nrows, ratios)
    shuffled = ds.random_shuffle(seed=seed).materialize()
    return [part.materialize() for part in shuffled.split_at_indices(boundaries)]


def _keep_fold(batch: pd.DataFrame, column: str, value, keep: bool) -> pd.DataFrame:
    mask = batch[column] == value
    return batch[mask if keep else ~mask]


def fold_datasets(
    ds: Dataset,
    nrows: int,
    nfolds: int = 0,
    fold_column: str | None = None,
    seed: int | None = None,
) -> List[Tuple[Dataset, Dataset]]:
    """(train, holdout) pairs, one per fold."""
    if fold_column:
        values = sorted(v for v in ds.unique(fold_column) if v is not None)
        if len(values) < 2:
            raise errors.ValidationError(
                f"fold_column '{fold_column}' must have at least 2 distinct values"
            )
        pairs = []
        for value in values:
            kwargs = {"column": fold_column, "value": value}
            train = ds.map_batches(
                _keep_fold, fn_kwargs={**kwargs, "keep": False}, batch_format="pandas"
            )
            holdout = ds.map_batches(
                _keep_fold, fn_kwargs={**kwargs, "keep": True}, batch_format="pandas"
            )
            pairs.append((train.materialize(), holdout.materialize()))
        return pairs

    if nrows < nfolds:
        raise errors.ValidationError(
            f"nfolds={nfolds} exceeds the number of training rows ({nrows})"
        )
    folds = split_dataset(ds, nrows, [1.0 / nfolds] * (nfolds - 1), seed=seed)
    pairs = []
    for i, holdout in enumerate(folds):
        others = [fold for j, fold in enumerate(folds) if j != i]
        pairs.append((others[0].union(*others[1:]), holdout))
    return pairs


# ============================================== #
# 🔹 SECTION: Summaries
# ============================================== #
def _missing_counts(batch: pd.DataFrame) -> pd.DataFrame:
    return batch.isna().sum().to_frame().T


def describe_dataset(ds: Dataset, columns: List[ColumnInfo]) -> pd.DataFrame:
    """One row per column: type, missing count and numeric moments or levels."""
    missing = ds.map_batches(_missing_counts, batch_format="pandas").to_pandas().sum()

    rows = []
    for col in columns:
        row = {
            "column": col.name,
            "type": col.type.value,
            "missing": int(missing.get(col.name, 0)),
        }
        if col.is_categorical:
            row["levels"] = len(col.levels or [])
        else:
            row.update(
                mean=ds.mean(col.name),
                std=ds.std(col.name),
                min=ds.min(col.name),
                max=ds.max(col.name),
            )
        rows.append(row)
    return pd.DataFrame(rows).set_index("column")
