# ==============================================================================
# Training Module
# ==============================================================================
#
# Cluster-side code submitted by the session for every fit.
#
# Components:
#   - config.py: per-algorithm option models (DeepLearningConfig)
#   - schemas.py: column, feature encoding and metrics models
#   - data.py: feature encoding with Ray Data
#   - model.py: PyTorch Lightning multi-layer perceptron
#   - train.py: Ray Train TorchTrainer job
#   - scoring.py: batch prediction over Ray Datasets
#   - metrics.py: classification / regression metrics (torchmetrics)
#   - tune.py: grid and random search expansion
#
# ==============================================================================
"""Training module for tabular deep learning."""
