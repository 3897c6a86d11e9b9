# ==============================================================================
# Deep Learning Session Client
# ==============================================================================
#
# Synchronous client that drives datasets and deep learning models resident on
# a Ray cluster through opaque handles.
#
# Operations:
#   - Cluster:   connect, cluster_status, close
#   - Datasets:  import_dataset, upload_dataframe, split, as_factor, head,
#                describe
#   - Models:    fit (with checkpoint continuation and cross-validation),
#                grid_search, random_search, predict, performance, varimp
#   - Storage:   save, load
#   - Registry:  get_dataset, get_model, list_handles, remove, remove_all
#
# Every remote request runs through Session._request(), which applies the
# configured timeout and maps Ray / pydantic failures onto src.session.errors.
# Handles are registered only after a request returned, so a failed or timed
# out request leaves the registry untouched.
#
# Usage:
#   with connect(thread_count=4) as session:
#       data = session.import_dataset("data/train.csv")
#       train, valid, _ = session.split(data, [0.6, 0.2], seed=1)
#       model = session.fit("deeplearning", {"x": [...], "y": "label"}, train, valid)
#       print(session.performance(model, valid))
#
# ==============================================================================

import re
import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import mlflow
import mlflow.pytorch
import numpy as np
import pandas as pd
import pydantic
import ray
import ray.exceptions
from pydantic import BaseModel
from ray.data import DataContext, Dataset
from ray.train import Checkpoint

from src._utils.logging import get_logger, log_section
from src.session import errors
from src.session.config import SESSION_CONFIG, SessionSettings
from src.session.frames import (
    describe_dataset,
    fold_datasets,
    normalize_columns,
    read_dataset,
    resolve_dvc_path,
    split_boundaries,
    split_dataset,
    to_factor,
)
from src.session.handles import DatasetHandle, ModelHandle
from src.session.registry import HandleRegistry
from src.training.config import resolve_algorithm
from src.training.data import build_feature_spec
from src.training.metrics import compute_metrics
from src.training.model import gedeon_importance
from src.training.schemas import (
    ColumnInfo,
    ColumnType,
    FeatureSpec,
    MetricsSummary,
    VariableImportance,
)
from src.training.scoring import probability_columns, score_dataset
from src.training.train import TrainOutcome, run_training
from src.training.tune import expand_grid, sample_variants

logger = get_logger(__name__)

_MEMORY_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

# Requirements recorded with saved models
_MODEL_REQUIREMENTS = ["torch", "lightning", "torchmetrics"]


def parse_memory(limit: int | str | None) -> int | None:
    """Bytes from an int or a size string such as ``"2G"`` or ``"512m"``."""
    if limit is None or isinstance(limit, int):
        return limit
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([KMGT]?)B?\s*", limit, re.IGNORECASE)
    if not match:
        raise errors.ValidationError(f"Invalid memory limit: {limit!r}")
    value, unit = match.groups()
    return int(float(value) * _MEMORY_UNITS[unit.upper()])


def connect(
    address: str | None = None,
    thread_count: int = -1,
    memory_limit: int | str | None = None,
    timeout: float | None = None,
    settings: SessionSettings | None = None,
) -> "Session":
    """Connect to a Ray cluster, starting a local one when no address is given.

    Args:
        address: Ray cluster address (``"auto"``, ``"ray://host:10001"``, ...).
            None or ``"local"`` starts a local cluster.
        thread_count: CPUs of the local cluster, -1 for all cores
        memory_limit: Object store size of the local cluster, bytes or ``"2G"``
        timeout: Seconds each request may take (None waits indefinitely)
        settings: Session settings, defaults to environment-driven SESSION_CONFIG

    Returns:
        A connected Session
    """
    settings = settings or SESSION_CONFIG
    address = address or settings.ray_address
    object_store_memory = parse_memory(memory_limit)
    if thread_count == 0 or thread_count < -1:
        raise errors.ValidationError(
            f"thread_count must be -1 or positive, got {thread_count}"
        )

    log_section("Connecting to Ray", "🔌")
    owns_cluster = True
    try:
        if ray.is_initialized():
            logger.warning("⚠️ Ray is already initialized, reusing the running cluster")
            owns_cluster = False
        elif address in (None, "local"):
            logger.info(
                f"Starting local cluster (cpus: {'all' if thread_count == -1 else thread_count})"
            )
            ray.init(
                num_cpus=None if thread_count == -1 else thread_count,
                object_store_memory=object_store_memory,
                include_dashboard=False,
            )
        else:
            if thread_count != -1 or memory_limit is not None:
                logger.warning(
                    "⚠️ thread_count / memory_limit are ignored for an existing cluster"
                )
            logger.info(f"Address: [cyan]{address}[/cyan]")
            ray.init(address=address)
    except (ConnectionError, ray.exceptions.RaySystemError) as e:
        raise errors.ConnectionError(
            f"Cannot reach Ray cluster at {address}: {e}"
        ) from e

    DataContext.get_current().execution_options.preserve_order = True

    session = Session(settings=settings, timeout=timeout, owns_cluster=owns_cluster)
    logger.success(f"✅ Connected: {session.cluster_status()['resources']}")
    return session


class Session:
    """Handle-based client for datasets and models on a Ray cluster."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        timeout: float | None = None,
        owns_cluster: bool = False,
    ):
        self.settings = settings or SESSION_CONFIG
        if timeout is None:
            timeout = self.settings.request_timeout_s
        self.timeout = timeout
        self._owns_cluster = owns_cluster
        self._registry = HandleRegistry()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ============================================== #
    # 🔹 SECTION: Requests
    # ============================================== #
    def _request(self, what: str, fn: Callable, *args, **kwargs) -> Any:
        """Run one remote request with timeout and error mapping."""
        self._registry.check_open()
        try:
            if not self.timeout:
                return fn(*args, **kwargs)

            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="request")
            try:
                future = executor.submit(fn, *args, **kwargs)
                return future.result(timeout=self.timeout)
            except FutureTimeoutError:
                raise errors.TimeoutError(
                    f"{what} did not finish within {self.timeout}s"
                ) from None
            finally:
                executor.shutdown(wait=False)
        except errors.SessionError:
            raise
        except pydantic.ValidationError as e:
            raise errors.ValidationError(f"{what}: {e}") from e
        except (ConnectionError, ray.exceptions.RaySystemError) as e:
            raise errors.ConnectionError(
                f"{what}: lost connection to cluster: {e}"
            ) from e

    def _dataset(self, handle: DatasetHandle | str) -> tuple[DatasetHandle, Dataset]:
        return self._registry.get(handle, DatasetHandle)

    def _model(self, handle: ModelHandle | str) -> tuple[ModelHandle, TrainOutcome]:
        return self._registry.get(handle, ModelHandle)

    def _register_dataset(
        self,
        ds: Dataset,
        columns: List[ColumnInfo],
        nrows: int,
        source: str | None,
        prefix: str = "frame",
        handle_id: str | None = None,
    ) -> DatasetHandle:
        handle = DatasetHandle(
            id=handle_id or self._registry.new_id(prefix),
            nrows=nrows,
            columns=columns,
            source=source,
        )
        return self._registry.register(handle, ds)

    # ============================================== #
    # 🔹 SECTION: Cluster
    # ============================================== #
    def cluster_status(self) -> Dict[str, Any]:
        """Total and available resources of the cluster."""

        def _status():
            return {
                "resources": ray.cluster_resources(),
                "available": ray.available_resources(),
                "nodes": len([n for n in ray.nodes() if n.get("Alive")]),
            }

        return self._request("cluster_status", _status)

    def close(self) -> None:
        """Invalidate every handle and disconnect."""
        if self._registry.closed:
            return
        self._registry.close()
        if self._owns_cluster:
            ray.shutdown()
        logger.info("🔌 Session closed")

    # ============================================== #
    # 🔹 SECTION: Datasets
    # ============================================== #
    def import_dataset(
        self,
        path: str,
        format: str | None = None,
        column_types: Mapping[str, ColumnType | str] | None = None,
        destination_frame: str | None = None,
        dvc_repo: str | None = None,
        dvc_rev: str | None = None,
    ) -> DatasetHandle:
        """Import a CSV, Parquet or JSON file (local, s3:// or DVC-tracked)."""
        self._check_free_id(destination_frame)

        def _import():
            source = resolve_dvc_path(path, dvc_repo, dvc_rev) if dvc_repo else path
            ds, columns = normalize_columns(read_dataset(source, format), column_types)
            return ds, columns, ds.count()

        ds, columns, nrows = self._request("import_dataset", _import)
        handle = self._register_dataset(
            ds, columns, nrows, path, handle_id=destination_frame
        )
        logger.success(f"📦 Imported {path} as {handle.id} ({nrows} x {handle.ncols})")
        return handle

    def upload_dataframe(
        self,
        df: pd.DataFrame,
        column_types: Mapping[str, ColumnType | str] | None = None,
        destination_frame: str | None = None,
    ) -> DatasetHandle:
        """Register an in-memory pandas frame on the cluster."""
        self._check_free_id(destination_frame)

        def _upload():
            return normalize_columns(ray.data.from_pandas(df), column_types)

        ds, columns = self._request("upload_dataframe", _upload)
        return self._register_dataset(
            ds, columns, len(df), "<pandas>", handle_id=destination_frame
        )

    def split(
        self,
        dataset: DatasetHandle | str,
        ratios: Sequence[float],
        seed: int | None = None,
    ) -> List[DatasetHandle]:
        """Random split into one part per ratio plus a remainder."""
        handle, ds = self._dataset(dataset)
        split_boundaries(handle.nrows, ratios)

        def _split():
            parts = split_dataset(ds, handle.nrows, ratios, seed=seed)
            return [(part, part.count()) for part in parts]

        parts = self._request("split", _split)
        handles = [
            self._register_dataset(part, handle.columns, nrows, handle.id)
            for part, nrows in parts
        ]
        logger.info(
            f"✂️ Split {handle.id}: {' / '.join(str(h.nrows) for h in handles)} rows"
        )
        return handles

    def as_factor(self, dataset: DatasetHandle | str, column: str) -> DatasetHandle:
        """Copy of ``dataset`` with ``column`` converted to categorical."""
        handle, ds = self._dataset(dataset)
        if handle.column(column) is None:
            raise errors.ValidationError(f"Unknown column '{column}' in {handle.id}")

        converted, levels = self._request("as_factor", to_factor, ds, column)
        columns = [
            ColumnInfo(name=col.name, type=ColumnType.CATEGORICAL, levels=levels)
            if col.name == column
            else col
            for col in handle.columns
        ]
        return self._register_dataset(converted, columns, handle.nrows, handle.id)

    def head(self, dataset: DatasetHandle | str, n: int = 10) -> pd.DataFrame:
        _, ds = self._dataset(dataset)
        return self._request("head", lambda: ds.limit(n).to_pandas())

    def describe(self, dataset: DatasetHandle | str) -> pd.DataFrame:
        handle, ds = self._dataset(dataset)
        return self._request("describe", describe_dataset, ds, handle.columns)

    # ============================================== #
    # 🔹 SECTION: Model Configuration
    # ============================================== #
    def _build_config(self, algorithm: str, config: BaseModel | Mapping[str, Any]):
        try:
            config_cls = resolve_algorithm(algorithm)
        except ValueError as e:
            raise errors.ValidationError(str(e)) from e

        if isinstance(config, config_cls):
            return config
        if isinstance(config, BaseModel):
            raise errors.ValidationError(
                f"Expected {config_cls.__name__} for '{algorithm}', "
                f"got {type(config).__name__}"
            )
        try:
            return config_cls(**dict(config))
        except pydantic.ValidationError as e:
            raise errors.ValidationError(
                f"Invalid {algorithm} configuration: {e}"
            ) from e

    @staticmethod
    def _options(config: BaseModel | Mapping[str, Any] | None) -> Dict[str, Any]:
        """Explicitly given options of a config object or mapping."""
        if config is None:
            return {}
        if isinstance(config, BaseModel):
            return config.model_dump(exclude_unset=True)
        return dict(config)

    def _check_free_id(self, handle_id: str | None) -> None:
        if handle_id is not None and self._registry.contains(handle_id):
            raise errors.ValidationError(f"Handle id '{handle_id}' is already in use")

    @staticmethod
    def _check_columns(config, data: DatasetHandle, role: str) -> None:
        needed = list(config.x) + [config.y]
        if role == "training" and config.fold_column:
            needed.append(config.fold_column)
        missing = [name for name in needed if data.column(name) is None]
        if missing:
            raise errors.ValidationError(
                f"Unknown column(s) {missing} in {role} data {data.id}"
            )

    @staticmethod
    def _check_types(config, train: DatasetHandle, valid: DatasetHandle) -> None:
        mismatched = [
            f"{name} ({train.column(name).type} vs {valid.column(name).type})"
            for name in list(config.x) + [config.y]
            if train.column(name).type != valid.column(name).type
        ]
        if mismatched:
            raise errors.ValidationError(
                f"Validation data {valid.id} types differ from training data "
                f"{train.id}: {', '.join(mismatched)}"
            )

    def _check_checkpoint(self, config) -> tuple[ModelHandle, TrainOutcome]:
        parent, record = self._model(config.checkpoint)
        previous = type(config).model_validate(parent.parameters).architecture()
        mismatched = [
            name
            for name, value in config.architecture().items()
            if previous[name] != value
        ]
        if mismatched:
            raise errors.ValidationError(
                f"Checkpoint {parent.id} was trained with different "
                f"{', '.join(mismatched)}"
            )
        if config.epochs <= parent.epochs_trained:
            raise errors.ValidationError(
                f"epochs={config.epochs} must exceed the {parent.epochs_trained} "
                f"epochs already trained by {parent.id}"
            )
        if record.checkpoint is None:
            raise errors.ValidationError(f"Model {parent.id} has no checkpoint")
        if config.cross_validated:
            raise errors.ValidationError(
                "Cross-validation cannot be combined with a checkpoint"
            )
        return parent, record

    def _prepare_fit(
        self,
        algorithm: str,
        config: BaseModel | Mapping[str, Any],
        training_data: DatasetHandle | str,
        validation_data: DatasetHandle | str | None,
    ) -> Dict[str, Any]:
        """Validate a fit request without submitting anything."""
        config = self._build_config(algorithm, config)
        train_handle, train_ds = self._dataset(training_data)
        self._check_columns(config, train_handle, "training")

        val_handle, val_ds = None, None
        if validation_data is not None:
            val_handle, val_ds = self._dataset(validation_data)
            self._check_columns(config, val_handle, "validation")
            self._check_types(config, train_handle, val_handle)

        target = train_handle.column(config.y)
        if target.is_categorical and len(target.levels or []) < 2:
            raise errors.ValidationError(
                f"Categorical target '{config.y}' needs at least 2 levels, "
                f"got {target.levels}"
            )

        parent, record = None, None
        if config.checkpoint:
            parent, record = self._check_checkpoint(config)

        self._check_free_id(config.model_id)
        return {
            "algorithm": algorithm.lower(),
            "config": config,
            "train": (train_handle, train_ds),
            "val": (val_handle, val_ds),
            "parent": parent,
            "record": record,
        }

    # ============================================== #
    # 🔹 SECTION: Training
    # ============================================== #
    def _score(
        self, record: TrainOutcome, spec: FeatureSpec, ds: Dataset
    ) -> pd.DataFrame:
        return score_dataset(
            ds, record.model, spec, keep_columns=[spec.response.name]
        ).to_pandas()

    def _metrics(
        self, record: TrainOutcome, spec: FeatureSpec, ds: Dataset
    ) -> MetricsSummary:
        return compute_metrics(self._score(record, spec, ds), spec)

    def _run_fit(self, request: Dict[str, Any], model_id: str) -> Dict[str, Any]:
        """Remote part of a fit: encoding, training, scoring, cross-validation."""
        config = request["config"]
        train_handle, train_ds = request["train"]
        _, val_ds = request["val"]
        parent, record = request["parent"], request["record"]

        if parent is not None:
            spec = parent.feature_spec
        else:
            spec = build_feature_spec(
                train_ds,
                {col.name: col for col in train_handle.columns},
                config.x,
                config.y,
                standardize=config.standardize,
            )

        outcome = run_training(
            model_id,
            config,
            spec,
            train_ds,
            val_ds,
            self.settings,
            checkpoint=record.checkpoint if record else None,
        )
        result = {
            "spec": spec,
            "outcome": outcome,
            "training_metrics": self._metrics(outcome, spec, train_ds),
            "validation_metrics": (
                self._metrics(outcome, spec, val_ds) if val_ds is not None else None
            ),
            "folds": [],
            "cross_validation_metrics": None,
        }

        if config.cross_validated:
            log_section(f"Cross-validating {model_id}", "🔁")
            folds = fold_datasets(
                train_ds,
                train_handle.nrows,
                nfolds=config.nfolds,
                fold_column=config.fold_column,
                seed=config.seed,
            )
            holdout_scores = []
            for i, (fold_train, fold_holdout) in enumerate(folds, start=1):
                fold_id = f"{model_id}_cv_{i}"
                fold_config = config.model_copy(
                    update={"model_id": fold_id, "nfolds": 0, "fold_column": None}
                )
                fold_outcome = run_training(
                    fold_id, fold_config, spec, fold_train, None, self.settings
                )
                holdout_scores.append(self._score(fold_outcome, spec, fold_holdout))
                result["folds"].append(
                    (fold_id, fold_config, fold_outcome,
                     self._metrics(fold_outcome, spec, fold_train))
                )
            result["cross_validation_metrics"] = compute_metrics(
                pd.concat(holdout_scores, ignore_index=True), spec
            )
        return result

    def _model_handle(
        self,
        model_id: str,
        algorithm: str,
        config,
        spec: FeatureSpec,
        outcome: TrainOutcome,
        **metrics,
    ) -> ModelHandle:
        parameters = config.model_dump(mode="json")
        parameters["model_id"] = model_id
        return ModelHandle(
            id=model_id,
            algorithm=algorithm,
            parameters=parameters,
            model_category=spec.category,
            feature_spec=spec,
            epochs_trained=outcome.epochs_trained,
            scoring_history=outcome.history,
            **metrics,
        )

    def fit(
        self,
        algorithm: str,
        config: BaseModel | Mapping[str, Any],
        training_data: DatasetHandle | str,
        validation_data: DatasetHandle | str | None = None,
    ) -> ModelHandle:
        """Train a model on ``training_data``.

        A categorical target trains a classifier, a numeric target a regressor.
        With ``checkpoint`` set the named model is trained further up to
        ``epochs`` total epochs.

        Raises:
            errors.ValidationError: invalid options or unknown columns
            errors.TrainingError: the training job failed on the cluster
        """
        request = self._prepare_fit(algorithm, config, training_data, validation_data)
        config = request["config"]
        model_id = config.model_id or self._registry.new_id("deeplearning")

        try:
            result = self._request(f"fit {model_id}", self._run_fit, request, model_id)
        except (RuntimeError, ValueError) as e:
            raise errors.TrainingError(str(e)) from e

        spec, outcome = result["spec"], result["outcome"]
        fold_ids = []
        for fold_id, fold_config, fold_outcome, fold_metrics in result["folds"]:
            fold_handle = self._model_handle(
                fold_id,
                request["algorithm"],
                fold_config,
                spec,
                fold_outcome,
                training_metrics=fold_metrics,
            )
            self._registry.register(fold_handle, fold_outcome)
            fold_ids.append(fold_id)

        handle = self._model_handle(
            model_id,
            request["algorithm"],
            config,
            spec,
            outcome,
            training_metrics=result["training_metrics"],
            validation_metrics=result["validation_metrics"],
            cross_validation_metrics=result["cross_validation_metrics"],
            cross_validation_models=fold_ids,
            checkpoint_of=request["parent"].id if request["parent"] else None,
        )
        self._registry.register(handle, outcome)
        self._track(handle)
        logger.success(f"✅ {handle!r}")
        return handle

    def _track(self, handle: ModelHandle) -> None:
        """Log a fitted model's parameters and metrics to MLflow, if configured."""
        if not self.settings.mlflow_tracking_uri:
            return
        mlflow.set_tracking_uri(self.settings.mlflow_tracking_uri)
        mlflow.set_experiment(self.settings.mlflow_experiment_name)
        with mlflow.start_run(run_name=handle.id):
            mlflow.log_params({k: str(v) for k, v in handle.parameters.items()})
            mlflow.set_tags(
                {"algorithm": handle.algorithm, "category": handle.model_category.value}
            )
            for prefix, summary in (
                ("train", handle.training_metrics),
                ("val", handle.validation_metrics),
                ("cv", handle.cross_validation_metrics),
            ):
                if summary is None:
                    continue
                mlflow.log_metrics(
                    {
                        f"{prefix}_{k}": v
                        for k, v in summary.model_dump().items()
                        if isinstance(v, float)
                    }
                )

    # ============================================== #
    # 🔹 SECTION: Hyperparameter Search
    # ============================================== #
    def _search(
        self,
        algorithm: str,
        variants: List[Dict[str, Any]],
        fixed_config: BaseModel | Mapping[str, Any] | None,
        training_data: DatasetHandle | str,
        validation_data: DatasetHandle | str | None,
        search_id: str,
        max_runtime_secs: float = 0,
    ) -> List[ModelHandle]:
        fixed = self._options(fixed_config)
        fixed.pop("model_id", None)

        # Validate every combination before the first fit is submitted
        requests = [
            self._prepare_fit(
                algorithm,
                {**fixed, **variant, "model_id": f"{search_id}_model_{i}"},
                training_data,
                validation_data,
            )
            for i, variant in enumerate(variants, start=1)
        ]

        models = []
        started = time.monotonic()
        for i, request in enumerate(requests, start=1):
            if max_runtime_secs and time.monotonic() - started > max_runtime_secs:
                logger.warning(
                    f"⏱️ {search_id}: max_runtime_secs reached after {len(models)} models"
                )
                break
            logger.info(f"🔎 {search_id}: model {i}/{len(requests)}")
            models.append(
                self.fit(algorithm, request["config"], training_data, validation_data)
            )
        return models

    def grid_search(
        self,
        algorithm: str,
        hyper_params: Mapping[str, Sequence[Any]],
        fixed_config: BaseModel | Mapping[str, Any] | None,
        training_data: DatasetHandle | str,
        validation_data: DatasetHandle | str | None = None,
        grid_id: str | None = None,
    ) -> List[ModelHandle]:
        """One fit per combination of candidate values."""
        try:
            variants = expand_grid(hyper_params)
        except ValueError as e:
            raise errors.ValidationError(str(e)) from e

        grid_id = grid_id or self._registry.new_id("grid")
        log_section(f"Grid search {grid_id}: {len(variants)} models", "🔎")
        return self._search(
            algorithm, variants, fixed_config, training_data, validation_data, grid_id
        )

    def random_search(
        self,
        algorithm: str,
        samplers: Mapping[str, Any],
        fixed_config: BaseModel | Mapping[str, Any] | None,
        trials: int,
        training_data: DatasetHandle | str,
        validation_data: DatasetHandle | str | None = None,
        seed: int | None = None,
        max_runtime_secs: float = 0,
        search_id: str | None = None,
    ) -> List[ModelHandle]:
        """Fit ``trials`` models with options drawn from ``samplers``.

        A sampler is a list of candidates, a Ray Tune domain
        (``tune.uniform(0, 1e-4)``) or a callable receiving a NumPy Generator.
        """
        try:
            variants = sample_variants(samplers, trials, seed=seed)
        except ValueError as e:
            raise errors.ValidationError(str(e)) from e

        search_id = search_id or self._registry.new_id("random")
        log_section(f"Random search {search_id}: {trials} trials", "🎲")
        return self._search(
            algorithm,
            variants,
            fixed_config,
            training_data,
            validation_data,
            search_id,
            max_runtime_secs=max_runtime_secs,
        )

    # ============================================== #
    # 🔹 SECTION: Scoring
    # ============================================== #
    @staticmethod
    def _check_schema(
        model: ModelHandle, data: DatasetHandle, with_target: bool
    ) -> None:
        spec = model.feature_spec
        expected = [(col.name, col.type) for col in spec.features]
        if with_target:
            expected.append((spec.response.name, spec.response.type))

        for name, kind in expected:
            column = data.column(name)
            if column is None:
                raise errors.StateError(
                    f"{data.id} has no column '{name}' required by {model.id}"
                )
            if column.type != kind:
                raise errors.StateError(
                    f"Column '{name}' of {data.id} is {column.type.value}, "
                    f"{model.id} was trained on {kind.value}"
                )

    def predict(
        self, model: ModelHandle | str, data: DatasetHandle | str
    ) -> DatasetHandle:
        """Score ``data``; one output row per input row, in input order."""
        handle, record = self._model(model)
        data_handle, ds = self._dataset(data)
        self._check_schema(handle, data_handle, with_target=False)
        spec = handle.feature_spec

        def _predict():
            scored = score_dataset(ds, record.model, spec).materialize()
            return scored, scored.count()

        scored, nrows = self._request("predict", _predict)
        if spec.is_classification:
            columns = [
                ColumnInfo(name="predict", type=ColumnType.CATEGORICAL, levels=spec.domain)
            ] + [
                ColumnInfo(name=name, type=ColumnType.NUMERIC)
                for name in probability_columns(spec)
            ]
        else:
            columns = [ColumnInfo(name="predict", type=ColumnType.NUMERIC)]
        return self._register_dataset(
            scored, columns, nrows, handle.id, prefix="prediction"
        )

    def performance(
        self, model: ModelHandle | str, data: DatasetHandle | str
    ) -> MetricsSummary:
        """Metrics of ``model`` on ``data`` (which must contain the target)."""
        handle, record = self._model(model)
        data_handle, ds = self._dataset(data)
        self._check_schema(handle, data_handle, with_target=True)
        try:
            return self._request(
                "performance", self._metrics, record, handle.feature_spec, ds
            )
        except ValueError as e:
            raise errors.StateError(str(e)) from e

    def varimp(self, model: ModelHandle | str) -> List[VariableImportance]:
        """Gedeon variable importances per source column, most important first."""
        handle, record = self._model(model)
        importance = gedeon_importance(record.model).numpy().astype(np.float64)

        totals: Dict[str, float] = {}
        for source, value in zip(handle.feature_spec.source_columns(), importance):
            totals[source] = totals.get(source, 0.0) + float(value)

        top = max(totals.values(), default=0.0) or 1.0
        total = sum(totals.values()) or 1.0
        ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
        return [
            VariableImportance(
                variable=name,
                relative_importance=value,
                scaled_importance=value / top,
                percentage=value / total,
            )
            for name, value in ranked
        ]

    # ============================================== #
    # 🔹 SECTION: Persistence
    # ============================================== #
    def save(self, model: ModelHandle | str, path: str, force: bool = False) -> str:
        """Write ``model`` to ``<path>/<model id>/`` and return that directory.

        The model is written to a staging directory next to the target first,
        so an existing copy is replaced only once the new one is complete.
        """
        handle, record = self._model(model)
        target = Path(path).expanduser() / handle.id
        if target.exists() and not force:
            raise errors.ValidationError(
                f"{target} already exists; pass force=True to overwrite"
            )

        def _save():
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(
                tempfile.mkdtemp(prefix=f".{handle.id}-", dir=target.parent)
            )
            try:
                mlflow.pytorch.save_model(
                    record.model,
                    str(staging / "model"),
                    pip_requirements=_MODEL_REQUIREMENTS,
                )
                (staging / "handle.json").write_text(handle.model_dump_json(indent=2))
                if record.checkpoint is not None:
                    record.checkpoint.to_directory(str(staging / "checkpoint"))
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

            if target.exists():
                previous = target.with_name(f"{staging.name}.old")
                target.rename(previous)
                staging.rename(target)
                shutil.rmtree(previous)
            else:
                staging.rename(target)
            return str(target)

        saved = self._request("save", _save)
        logger.success(f"💾 Saved {handle.id} to {saved}")
        return saved

    def load(self, path: str) -> ModelHandle:
        """Load a model directory written by save().

        A model whose id is already in use is registered under a fresh id.
        """
        source = Path(path).expanduser()
        if not (source / "handle.json").is_file() or not (source / "model").is_dir():
            raise errors.NotFoundError(f"No saved model at {path}")

        def _load():
            handle = ModelHandle.model_validate_json(
                (source / "handle.json").read_text()
            )
            model = mlflow.pytorch.load_model(str(source / "model"), map_location="cpu")
            checkpoint = None
            if (source / "checkpoint").is_dir():
                checkpoint = Checkpoint.from_directory(str(source / "checkpoint"))
            outcome = TrainOutcome(
                model=model.eval(),
                checkpoint=checkpoint,
                history=handle.scoring_history,
                epochs_trained=handle.epochs_trained,
            )
            return handle, outcome

        handle, outcome = self._request("load", _load)
        if self._registry.contains(handle.id):
            new_id = self._registry.new_id(handle.id)
            logger.warning(f"⚠️ Model id {handle.id} is in use, loading as {new_id}")
            parameters = {**handle.parameters, "model_id": new_id}
            handle = handle.model_copy(update={"id": new_id, "parameters": parameters})
        self._registry.register(handle, outcome)
        logger.success(f"📂 Loaded {handle.id} from {path}")
        return handle

    # ============================================== #
    # 🔹 SECTION: Registry
    # ============================================== #
    def get_dataset(self, handle_id: str) -> DatasetHandle:
        return self._dataset(handle_id)[0]

    def get_model(self, handle_id: str) -> ModelHandle:
        return self._model(handle_id)[0]

    def list_handles(self) -> List[DatasetHandle | ModelHandle]:
        return self._registry.handles()

    def remove(self, handle: DatasetHandle | ModelHandle | str) -> None:
        self._registry.remove(handle)

    def remove_all(self) -> int:
        count = self._registry.clear()
        logger.info(f"🗑️ Removed {count} handles")
        return count
