"""Handle lifecycle, request timeouts and other client behavior without a cluster."""

import os
import time

import mlflow.pytorch
import pytest

from src.session import errors
from src.session.client import Session, parse_memory
from src.session.config import SessionSettings
from src.session.handles import DatasetHandle, ModelHandle
from src.session.registry import HandleRegistry
from src.training.model import TabularMLP
from src.training.schemas import ColumnInfo, ColumnType, FeatureColumn, FeatureSpec
from src.training.train import TrainOutcome


def dataset_handle(handle_id: str = "frame_1") -> DatasetHandle:
    return DatasetHandle(
        id=handle_id,
        nrows=3,
        columns=[
            ColumnInfo(name="x", type=ColumnType.NUMERIC),
            ColumnInfo(name="label", type=ColumnType.CATEGORICAL, levels=["a", "b"]),
        ],
    )


def test_dataset_handle_attributes():
    handle = dataset_handle()
    assert handle.ncols == 2
    assert handle.names == ["x", "label"]
    assert handle.column("label").levels == ["a", "b"]
    assert handle.column("missing") is None


def test_registry_round_trip():
    registry = HandleRegistry()
    handle = registry.register(dataset_handle(), payload="payload")
    assert registry.get("frame_1") == (handle, "payload")
    assert registry.get(handle, DatasetHandle)[1] == "payload"
    assert registry.handles() == [handle]


def test_duplicate_ids_rejected():
    registry = HandleRegistry()
    registry.register(dataset_handle(), None)
    with pytest.raises(errors.ValidationError):
        registry.register(dataset_handle(), None)


def test_removed_handle_is_not_found():
    registry = HandleRegistry()
    handle = registry.register(dataset_handle(), None)
    registry.remove(handle)
    with pytest.raises(errors.NotFoundError):
        registry.get(handle)
    with pytest.raises(errors.NotFoundError):
        registry.remove(handle)


def test_wrong_kind_is_not_found():
    registry = HandleRegistry()
    registry.register(dataset_handle(), None)
    with pytest.raises(errors.NotFoundError, match="ModelHandle"):
        registry.get("frame_1", ModelHandle)


def test_closed_registry_raises_state_error():
    registry = HandleRegistry()
    handle = registry.register(dataset_handle(), None)
    registry.close()
    with pytest.raises(errors.StateError):
        registry.get(handle)
    with pytest.raises(errors.StateError):
        registry.register(dataset_handle("frame_2"), None)


def test_new_ids_are_unique():
    ids = {HandleRegistry.new_id("frame") for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("frame_") for i in ids)


def test_closed_session_invalidates_handles():
    session = Session(settings=SessionSettings())
    session._registry.register(dataset_handle(), None)
    session.close()
    with pytest.raises(errors.StateError):
        session.get_dataset("frame_1")
    with pytest.raises(errors.StateError):
        session.list_handles()
    session.close()


def test_request_timeout_raises_timeout_error():
    session = Session(settings=SessionSettings(), timeout=0.05)
    with pytest.raises(errors.TimeoutError, match="slow request"):
        session._request("slow request", time.sleep, 1.0)
    assert session._request("fast request", lambda: 42) == 42


def test_request_timeout_defaults_to_settings():
    session = Session(settings=SessionSettings(request_timeout_s=3.5))
    assert session.timeout == 3.5


def test_request_maps_connection_errors():
    def dropped():
        raise ConnectionError("socket closed")

    session = Session(settings=SessionSettings())
    with pytest.raises(errors.ConnectionError):
        session._request("dropped", dropped)


def test_unknown_algorithm_is_validation_error():
    session = Session(settings=SessionSettings())
    with pytest.raises(errors.ValidationError, match="Unknown algorithm"):
        session._build_config("gbm", {"x": ["x"], "y": "label"})
    with pytest.raises(errors.ValidationError):
        session._build_config("deeplearning", {"x": ["x"], "y": "label", "epochs": 0})


@pytest.mark.parametrize(
    "limit, expected",
    [(None, None), (1024, 1024), ("2G", 2 * 1024**3), ("512m", 512 * 1024**2), ("1.5K", 1536)],
)
def test_parse_memory(limit, expected):
    assert parse_memory(limit) == expected


def test_parse_memory_rejects_garbage():
    with pytest.raises(errors.ValidationError):
        parse_memory("lots")


def saved_model_session() -> tuple[Session, ModelHandle]:
    spec = FeatureSpec(
        features=[FeatureColumn(name="x", type=ColumnType.NUMERIC)],
        response=ColumnInfo(name="label", type=ColumnType.CATEGORICAL, levels=["a", "b"]),
    )
    handle = ModelHandle(
        id="deeplearning_saved",
        algorithm="deeplearning",
        parameters={"hidden": [2]},
        model_category=spec.category,
        feature_spec=spec,
        epochs_trained=1,
    )
    outcome = TrainOutcome(
        model=TabularMLP(input_dim=1, output_dim=2, hidden=[2]), checkpoint=None
    )
    session = Session(settings=SessionSettings())
    session._registry.register(handle, outcome)
    return session, handle


def test_failed_forced_save_keeps_previous_copy(tmp_path, monkeypatch):
    session, handle = saved_model_session()
    target = tmp_path / handle.id
    target.mkdir()
    (target / "handle.json").write_text("previous")

    def broken_save_model(model, path, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(mlflow.pytorch, "save_model", broken_save_model)
    with pytest.raises(RuntimeError, match="disk full"):
        session.save(handle, str(tmp_path), force=True)

    assert (target / "handle.json").read_text() == "previous"
    assert [p.name for p in tmp_path.iterdir()] == [handle.id]


def test_forced_save_replaces_previous_copy(tmp_path, monkeypatch):
    session, handle = saved_model_session()
    target = tmp_path / handle.id
    target.mkdir()
    (target / "stale.txt").write_text("previous")

    def fake_save_model(model, path, **kwargs):
        os.makedirs(path)

    monkeypatch.setattr(mlflow.pytorch, "save_model", fake_save_model)
    assert session.save(handle, str(tmp_path), force=True) == str(target)

    assert sorted(p.name for p in target.iterdir()) == ["handle.json", "model"]
    assert ModelHandle.model_validate_json((target / "handle.json").read_text()) == handle
    assert [p.name for p in tmp_path.iterdir()] == [handle.id]
