# ==============================================================================
# Deep Learning Training Job
# ==============================================================================
#
# Distributed training of TabularMLP using Ray Train with PyTorch Lightning.
#
# This module is what a Session submits to the cluster for every fit:
#   1. Encode the training / validation datasets with the model's FeatureSpec
#   2. Configure distributed training with Ray TorchTrainer (DDP)
#   3. Resume from a checkpoint when the fit continues a previous model
#   4. Load the final checkpoint back into a TabularMLP for scoring
#
# Architecture:
#   - Driver: run_training() runs in the client process and blocks on fit()
#   - Workers: train_fn_per_worker() runs on Ray workers, executing Lightning
#   - Data is sharded across workers using Ray Data
#
# Reproducibility:
#   reproducible=True pins a single worker, seeds every RNG and enables
#   Lightning's deterministic mode.
#
# See Also:
#   - src/training/model.py: PyTorch Lightning model definition
#   - src/training/data.py: feature encoding
#   - src/session/client.py: the caller
#
# ==============================================================================

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List

import lightning.pytorch as pl
import pandas as pd
import pyarrow.fs
import torch
from lightning.pytorch.callbacks import EarlyStopping
from ray.data import Dataset
from ray.train import (
    Checkpoint,
    CheckpointConfig,
    FailureConfig,
    RunConfig,
    ScalingConfig,
    get_checkpoint,
    get_context,
    get_dataset_shard,
)
from ray.train.lightning import (
    RayDDPStrategy,
    RayLightningEnvironment,
    RayTrainReportCallback,
    prepare_trainer,
)
from ray.train.torch import TorchTrainer

from src._utils.logging import get_logger, log_section
from src.training.config import DeepLearningConfig
from src.training.data import prepare_dataset
from src.training.model import TabularMLP
from src.training.schemas import FeatureSpec

logger = get_logger(__name__)

# Hyperparameters forwarded from DeepLearningConfig to TabularMLP
MODEL_OPTIONS = (
    "hidden",
    "input_dropout_ratio",
    "l1",
    "l2",
    "adaptive_rate",
    "rho",
    "epsilon",
    "rate",
    "rate_annealing",
    "momentum_start",
    "momentum_ramp",
    "momentum_stable",
    "nesterov_accelerated_gradient",
    "mini_batch_size",
)


@dataclass
class TrainOutcome:
    """What a finished training job hands back to the session."""

    model: TabularMLP
    checkpoint: Checkpoint | None
    history: List[Dict[str, float]] = field(default_factory=list)
    epochs_trained: int = 0


# ============================================== #
# 🔹 SECTION: Training Functions
# ============================================== #
def build_model(train_loop_cnfg: dict) -> TabularMLP:
    spec = FeatureSpec.model_validate(train_loop_cnfg["feature_spec"])
    return TabularMLP(
        input_dim=spec.input_dim,
        output_dim=spec.output_dim,
        activation=train_loop_cnfg["activation"],
        hidden_dropout_ratios=train_loop_cnfg["hidden_dropout_ratios"],
        classification=spec.is_classification,
        **{name: train_loop_cnfg[name] for name in MODEL_OPTIONS},
    )


def _monitor(train_loop_cnfg: dict, classification: bool) -> tuple[str, str]:
    """Metric name and mode watched by early stopping."""
    prefix = "val" if train_loop_cnfg["has_validation"] else "train"
    if classification and train_loop_cnfg["stopping_metric"] == "misclassification":
        return f"{prefix}_acc", "max"
    return f"{prefix}_loss", "min"


def train_fn_per_worker(train_loop_cnfg: dict):
    """Training code that runs on each worker."""
    worker_logger = get_logger(__name__)
    worker_logger.info(
        f"🎯 Worker {get_context().get_world_rank()} of {get_context().get_world_size()} started"
    )

    seed = train_loop_cnfg.get("seed")
    if seed is not None:
        pl.seed_everything(seed, workers=True)

    target_dtype = (
        torch.int64 if train_loop_cnfg["classification"] else torch.float32
    )
    batch_size = train_loop_cnfg["mini_batch_size"]

    # Build data iterators
    train_ds_shard = get_dataset_shard("train")
    train_iter = train_ds_shard.iter_torch_batches(
        batch_size=batch_size,
        prefetch_batches=2,
        dtypes={"features": torch.float32, "target": target_dtype},
    )
    val_iter = None
    if train_loop_cnfg["has_validation"]:
        val_iter = get_dataset_shard("val").iter_torch_batches(
            batch_size=batch_size,
            prefetch_batches=1,
            dtypes={"features": torch.float32, "target": target_dtype},
        )

    model = build_model(train_loop_cnfg)

    callbacks = [RayTrainReportCallback()]
    if train_loop_cnfg["stopping_rounds"] > 0:
        monitor, mode = _monitor(train_loop_cnfg, train_loop_cnfg["classification"])
        callbacks.append(
            EarlyStopping(
                monitor=monitor,
                mode=mode,
                patience=train_loop_cnfg["stopping_rounds"],
                min_delta=train_loop_cnfg["stopping_tolerance"],
                check_on_train_epoch_end=not train_loop_cnfg["has_validation"],
                strict=False,
            )
        )

    max_time = None
    if train_loop_cnfg["max_runtime_secs"] > 0:
        max_time = timedelta(seconds=train_loop_cnfg["max_runtime_secs"])

    # Configure and fit distributed data parallel training lightning trainer
    trainer = pl.Trainer(
        max_epochs=train_loop_cnfg["epochs"],
        max_time=max_time,
        devices="auto",
        accelerator="auto",
        strategy=RayDDPStrategy(),
        plugins=[RayLightningEnvironment()],
        callbacks=callbacks,
        enable_checkpointing=False,  # `RayTrainReportCallback` does that already
        enable_progress_bar=False,
        logger=False,
        num_sanity_val_steps=0,
        deterministic=train_loop_cnfg["reproducible"],
        log_every_n_steps=50,
    )
    trainer = prepare_trainer(trainer)

    # Resume after a worker failure, or continue a previous model
    checkpoint = get_checkpoint() or train_loop_cnfg.get("checkpoint")
    if checkpoint:
        worker_logger.info(f"📂 Resuming from checkpoint: {checkpoint}")
        with checkpoint.as_directory() as ckpt_dir:
            ckpt_path = Path(ckpt_dir) / RayTrainReportCallback.CHECKPOINT_NAME
            trainer.fit(
                model,
                train_dataloaders=train_iter,
                val_dataloaders=val_iter,
                ckpt_path=ckpt_path,
            )
    else:
        worker_logger.info("🆕 Starting training from scratch")
        trainer.fit(model, train_dataloaders=train_iter, val_dataloaders=val_iter)

    if get_context().get_world_rank() == 0:
        worker_logger.success("✨ Training completed on rank 0")


def _storage_filesystem(settings) -> pyarrow.fs.FileSystem | None:
    if not settings.ray_storage_endpoint:
        return None
    return pyarrow.fs.S3FileSystem(
        endpoint_override=settings.ray_storage_endpoint,
        scheme=settings.ray_storage_scheme,
        access_key=os.getenv("AWS_ACCESS_KEY_ID"),
        secret_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
    )


def _storage_path(settings) -> str:
    if settings.ray_storage_endpoint:
        return settings.ray_storage_path
    return str(Path(settings.ray_storage_path).expanduser().resolve())


def build_train_loop_config(
    config: DeepLearningConfig,
    spec: FeatureSpec,
    has_validation: bool,
    checkpoint: Checkpoint | None = None,
) -> Dict[str, Any]:
    cnfg = config.model_dump(mode="json", exclude={"checkpoint"})
    cnfg.update(
        {
            "hidden_dropout_ratios": config.effective_hidden_dropout,
            "feature_spec": spec.model_dump(mode="json"),
            "classification": spec.is_classification,
            "has_validation": has_validation,
            "checkpoint": checkpoint,
        }
    )
    return cnfg


def _history(result) -> List[Dict[str, float]]:
    frame = result.metrics_dataframe
    if frame is None or frame.empty:
        return []
    keep = [
        c
        for c in frame.columns
        if c == "epoch" or c.startswith("train_") or c.startswith("val_")
    ]
    return [
        {k: float(v) for k, v in row.items() if pd.notna(v)}
        for row in frame[keep].to_dict(orient="records")
    ]


def run_training(
    run_name: str,
    config: DeepLearningConfig,
    spec: FeatureSpec,
    train_ds: Dataset,
    val_ds: Dataset | None,
    settings,
    checkpoint: Checkpoint | None = None,
) -> TrainOutcome:
    """Driver code: fit one model on the cluster and load the result."""
    log_section(f"Training {run_name}", "🚀")

    datasets = {"train": prepare_dataset(train_ds, spec)}
    if val_ds is not None:
        datasets["val"] = prepare_dataset(val_ds, spec)

    train_loop_config = build_train_loop_config(
        config, spec, has_validation=val_ds is not None, checkpoint=checkpoint
    )

    num_workers = 1 if config.reproducible else (
        config.num_workers or settings.ray_num_workers
    )
    logger.info(f"Number of workers: {num_workers}")
    logger.info(f"Hidden layers: {config.hidden} ({config.activation.value})")
    logger.info(f"Epochs: {config.epochs}, mini-batch size: {config.mini_batch_size}")

    trainer = TorchTrainer(
        train_loop_per_worker=train_fn_per_worker,
        train_loop_config=train_loop_config,
        scaling_config=ScalingConfig(
            num_workers=num_workers,
            use_gpu=False,
        ),
        run_config=RunConfig(
            name=run_name,
            checkpoint_config=CheckpointConfig(num_to_keep=1),
            failure_config=FailureConfig(max_failures=0),
            storage_filesystem=_storage_filesystem(settings),
            storage_path=_storage_path(settings),
        ),
        datasets=datasets,
    )

    logger.info("Starting distributed training...")
    result = trainer.fit()

    if result.error:
        raise RuntimeError(f"Training job {run_name} failed: {result.error}")
    if result.checkpoint is None:
        raise RuntimeError(f"Training job {run_name} produced no checkpoint")

    with result.checkpoint.as_directory() as checkpoint_dir:
        ckpt_path = Path(checkpoint_dir) / RayTrainReportCallback.CHECKPOINT_NAME
        model = TabularMLP.load_from_checkpoint(ckpt_path, map_location="cpu")
    model = model.cpu().eval()

    last_epoch = (result.metrics or {}).get("epoch", config.epochs - 1)
    epochs_trained = int(last_epoch) + 1
    logger.success(f"✨ {run_name} trained for {epochs_trained} epochs")

    return TrainOutcome(
        model=model,
        checkpoint=result.checkpoint,
        history=_history(result),
        epochs_trained=epochs_trained,
    )
