# ==============================================================================
# Deep Learning Model Definition
# ==============================================================================
#
# PyTorch Lightning module for tabular classification and regression.
#
# Model Architecture:
#   - Input dropout on the encoded feature vector
#   - Fully connected hidden layers (sizes from `hidden`)
#   - Activation: Tanh, Rectifier or Maxout (2 channels), optionally with
#     per-layer hidden dropout
#   - Output: one logit per class (classification) or a single value
#
# Training Features:
#   - Loss: cross-entropy (classification) or mean squared error (regression)
#   - L1 / L2 weight penalties added to the loss (weights only, not biases)
#   - Optimizer: ADADELTA (adaptive_rate) or SGD with rate annealing,
#     momentum ramp and Nesterov acceleration (manual rate)
#   - Metrics: accuracy (classification) or MSE (regression), per epoch
#
# Usage:
#   model = TabularMLP(input_dim=12, output_dim=2, hidden=[64, 64])
#   trainer = pl.Trainer(max_epochs=10)
#   trainer.fit(model, train_dataloader, val_dataloader)
#
# Note:
#   This model expects input batches as dicts: {'features': tensor, 'target': tensor}
#   Designed for use with Ray Data iterators (not standard PyTorch DataLoaders)
#
# ==============================================================================

from typing import Dict, List, Sequence, Tuple

import lightning.pytorch as pl
import torch
import torchmetrics
from torch import nn
from torchmetrics.classification import MulticlassAccuracy
from torchmetrics.regression import MeanSquaredError

from src.training.config import Activation


class Maxout(nn.Module):
    """Linear layer followed by a max over ``channels`` pieces per unit."""

    def __init__(self, in_features: int, out_features: int, channels: int = 2):
        super().__init__()
        self.out_features = out_features
        self.channels = channels
        self.linear = nn.Linear(in_features, out_features * channels)

    @property
    def weight(self) -> torch.Tensor:
        return self.linear.weight

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = self.linear(x)
        return out.view(-1, self.out_features, self.channels).max(dim=-1).values


def build_layers(
    input_dim: int,
    output_dim: int,
    hidden: Sequence[int],
    activation: str,
    input_dropout_ratio: float,
    hidden_dropout_ratios: Sequence[float],
) -> nn.Sequential:
    base = Activation(activation).base
    layers: List[nn.Module] = []
    if input_dropout_ratio > 0:
        layers.append(nn.Dropout(input_dropout_ratio))

    width = input_dim
    for units, dropout in zip(hidden, hidden_dropout_ratios):
        if base == "Maxout":
            layers.append(Maxout(width, units))
        else:
            layers.append(nn.Linear(width, units))
            layers.append(nn.Tanh() if base == "Tanh" else nn.ReLU())
        if dropout > 0:
            layers.append(nn.Dropout(dropout))
        width = units

    layers.append(nn.Linear(width, output_dim))
    return nn.Sequential(*layers)


class TabularMLP(pl.LightningModule):
    """Multi-layer perceptron for tabular data."""

    def __init__(
        self,
        input_dim: int,
        output_dim: int,
        hidden: List[int] = (200, 200),
        activation: str = "Rectifier",
        input_dropout_ratio: float = 0.0,
        hidden_dropout_ratios: List[float] | None = None,
        classification: bool = True,
        l1: float = 0.0,
        l2: float = 0.0,
        adaptive_rate: bool = True,
        rho: float = 0.99,
        epsilon: float = 1e-8,
        rate: float = 0.005,
        rate_annealing: float = 1e-6,
        momentum_start: float = 0.0,
        momentum_ramp: float = 1e6,
        momentum_stable: float = 0.0,
        nesterov_accelerated_gradient: bool = True,
        mini_batch_size: int = 32,
    ):
        super().__init__()
        hidden = list(hidden)
        if hidden_dropout_ratios is None:
            hidden_dropout_ratios = [0.0] * len(hidden)
        self.save_hyperparameters()

        self.net = build_layers(
            input_dim,
            output_dim,
            hidden,
            activation,
            input_dropout_ratio,
            hidden_dropout_ratios,
        )
        self.classification = classification

        if classification:
            self.criterion = nn.CrossEntropyLoss()
            metrics = {"acc": MulticlassAccuracy(num_classes=output_dim, average="micro")}
        else:
            self.criterion = nn.MSELoss()
            metrics = {"mse": MeanSquaredError()}
        self.train_metrics = torchmetrics.MetricCollection(metrics, prefix="train_")
        self.val_metrics = self.train_metrics.clone(prefix="val_")

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = self.net(x)
        return out if self.classification else out.squeeze(-1)

    def weight_matrices(self) -> List[torch.Tensor]:
        """Weight matrices of the hidden and output layers, input side first."""
        return [
            module.weight
            for module in self.net
            if isinstance(module, (nn.Linear, Maxout))
        ]

    def _penalty(self) -> torch.Tensor:
        penalty = torch.zeros((), device=self.device)
        if self.hparams.l1 == 0 and self.hparams.l2 == 0:
            return penalty
        for weight in self.weight_matrices():
            if self.hparams.l1:
                penalty = penalty + self.hparams.l1 * weight.abs().sum()
            if self.hparams.l2:
                penalty = penalty + self.hparams.l2 * weight.pow(2).sum()
        return penalty

    def _shared_step(
        self, batch: Dict[str, torch.Tensor]
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Shared logic for train/val steps."""
        x = batch["features"]
        y = batch["target"]
        out = self(x)
        loss = self.criterion(out, y)
        preds = torch.argmax(out, dim=1) if self.classification else out
        return loss, preds, y

    def training_step(
        self, batch: Dict[str, torch.Tensor], batch_idx: int
    ) -> torch.Tensor:
        loss, preds, targets = self._shared_step(batch)

        metrics = self.train_metrics(preds, targets)
        self.log_dict(metrics, on_step=False, on_epoch=True, prog_bar=True)
        self.log("train_loss", loss, on_step=False, on_epoch=True, prog_bar=True)

        return loss + self._penalty()

    def validation_step(self, batch: Dict[str, torch.Tensor], batch_idx: int) -> None:
        loss, preds, targets = self._shared_step(batch)

        metrics = self.val_metrics(preds, targets)
        self.log_dict(metrics, on_step=False, on_epoch=True, prog_bar=True)
        self.log("val_loss", loss, on_step=False, on_epoch=True, prog_bar=True)

    def on_train_batch_start(self, batch, batch_idx: int) -> None:
        if self.hparams.adaptive_rate:
            return
        momentum = self._momentum()
        for optimizer in self.trainer.optimizers:
            for group in optimizer.param_groups:
                group["momentum"] = momentum

    def _momentum(self) -> float:
        """Linear ramp from momentum_start to momentum_stable over momentum_ramp samples."""
        hp = self.hparams
        seen = self.global_step * hp.mini_batch_size
        progress = min(1.0, seen / hp.momentum_ramp)
        return hp.momentum_start + (hp.momentum_stable - hp.momentum_start) * progress

    def configure_optimizers(self):
        hp = self.hparams
        if hp.adaptive_rate:
            return torch.optim.Adadelta(
                self.parameters(), lr=1.0, rho=hp.rho, eps=hp.epsilon
            )

        nesterov = hp.nesterov_accelerated_gradient and hp.momentum_start > 0
        optimizer = torch.optim.SGD(
            self.parameters(),
            lr=hp.rate,
            momentum=hp.momentum_start,
            nesterov=nesterov,
        )
        # rate / (1 + rate_annealing * samples_seen)
        scheduler = torch.optim.lr_scheduler.LambdaLR(
            optimizer,
            lambda step: 1.0 / (1.0 + hp.rate_annealing * step * hp.mini_batch_size),
        )
        return {
            "optimizer": optimizer,
            "lr_scheduler": {"scheduler": scheduler, "interval": "step"},
        }


def gedeon_importance(model: TabularMLP) -> torch.Tensor:
    """Relative importance of each encoded input (Gedeon, first two layers)."""
    weights = [w.detach().abs().cpu() for w in model.weight_matrices()]
    first = weights[0]
    if isinstance(model.net, nn.Sequential):
        maxout = next((m for m in model.net if isinstance(m, Maxout)), None)
        if maxout is not None:
            # fold the maxout channels back onto their hidden unit
            first = first.view(maxout.out_features, maxout.channels, -1).sum(dim=1)

    # share of each input in every first-layer unit
    p_first = first / first.sum(dim=1, keepdim=True).clamp_min(1e-12)
    if len(weights) < 2:
        return p_first.sum(dim=0)

    second = weights[1]
    if second.shape[1] != p_first.shape[0]:
        return p_first.sum(dim=0)
    p_second = second / second.sum(dim=1, keepdim=True).clamp_min(1e-12)
    return (p_second @ p_first).sum(dim=0)
