"""Shared fixtures: a local Ray cluster session and small tabular frames."""

import numpy as np
import pandas as pd
import pytest

from src.session import connect
from src.session.config import SessionSettings


@pytest.fixture(scope="session")
def session(tmp_path_factory):
    """One local Ray cluster for every integration test."""
    settings = SessionSettings(
        ray_storage_path=str(tmp_path_factory.mktemp("ray_results")),
        mlflow_tracking_uri=None,
    )
    with connect(thread_count=4, memory_limit="512M", settings=settings) as s:
        yield s


@pytest.fixture
def ten_rows() -> pd.DataFrame:
    """10 rows, columns [x, y, label] with a 2-level categorical label."""
    return pd.DataFrame(
        {
            "x": [0.1, 0.4, 0.35, 0.8, 0.9, 0.05, 0.6, 0.7, 0.2, 0.95],
            "y": [1.0, 0.8, 0.9, 0.1, 0.2, 1.1, 0.3, 0.25, 0.7, 0.05],
            "label": ["no", "no", "no", "yes", "yes", "no", "yes", "yes", "no", "yes"],
        }
    )


@pytest.fixture(scope="session")
def tabular() -> pd.DataFrame:
    """200 rows with numeric, categorical and numeric-target columns."""
    rng = np.random.default_rng(7)
    n = 200
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    color = rng.choice(["red", "green", "blue"], size=n)
    return pd.DataFrame(
        {
            "x1": x1,
            "x2": x2,
            "color": color,
            "label": np.where(x1 + x2 > 0, "pos", "neg"),
            "target": 2.0 * x1 - x2 + rng.normal(scale=0.1, size=n),
        }
    )
