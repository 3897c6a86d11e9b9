"""End-to-end session behavior on a local Ray cluster."""

import pytest
from ray import tune

from src.session import errors
from src.training.schemas import ModelCategory

pytestmark = pytest.mark.cluster

SMALL = {"hidden": [8], "epochs": 2, "mini_batch_size": 16, "seed": 1}


@pytest.fixture(scope="module")
def tabular_data(session, tabular):
    data = session.upload_dataframe(tabular)
    train, valid, test = session.split(data, [0.6, 0.2], seed=5)
    return train, valid, test


@pytest.fixture(scope="module")
def classifier(session, tabular_data):
    train, valid, _ = tabular_data
    return session.fit(
        "deeplearning",
        {"x": ["x1", "x2", "color"], "y": "label", **SMALL},
        train,
        valid,
    )


def test_ten_row_scenario(session, ten_rows):
    data = session.upload_dataframe(ten_rows)
    assert data.nrows == 10
    assert data.column("label").levels == ["no", "yes"]

    model = session.fit("deeplearning", {"x": ["x", "y"], "y": "label", "epochs": 1}, data)
    predictions = session.predict(model, data)
    frame = session.head(predictions, 100)

    assert predictions.nrows == 10
    assert len(frame) == 10
    assert set(frame["predict"]) <= {"no", "yes"}
    assert list(frame.columns) == ["predict", "p_no", "p_yes"]


def test_classifier_metrics(session, classifier, tabular_data):
    _, _, test = tabular_data
    assert classifier.model_category == ModelCategory.BINOMIAL
    assert classifier.epochs_trained >= 1
    assert classifier.training_metrics.confusion_matrix is not None
    assert classifier.validation_metrics is not None

    metrics = session.performance(classifier, test)
    assert metrics.nobs == test.nrows
    assert metrics.confusion_matrix.domain == ["neg", "pos"]
    assert metrics.mae is None
    assert 0.0 <= metrics.accuracy <= 1.0


def test_regression_metrics(session, tabular_data):
    train, _, test = tabular_data
    model = session.fit(
        "deeplearning", {"x": ["x1", "x2", "color"], "y": "target", **SMALL}, train
    )
    metrics = session.performance(model, test)

    assert model.model_category == ModelCategory.REGRESSION
    assert metrics.confusion_matrix is None
    assert metrics.mse >= 0.0
    assert metrics.rmse == pytest.approx(metrics.mse**0.5)

    frame = session.head(session.predict(model, test), test.nrows)
    assert list(frame.columns) == ["predict"]
    assert len(frame) == test.nrows


def test_predictions_keep_row_order(session, classifier, tabular_data):
    _, _, test = tabular_data
    first = session.head(session.predict(classifier, test), test.nrows)
    second = session.head(session.predict(classifier, test), test.nrows)
    assert first.equals(second)


def test_fit_rejects_unknown_columns(session, tabular_data):
    train, valid, _ = tabular_data
    with pytest.raises(errors.ValidationError, match="nope"):
        session.fit("deeplearning", {"x": ["x1", "nope"], "y": "label"}, train)
    with pytest.raises(errors.ValidationError):
        session.fit("deeplearning", {"x": ["x1"], "y": "missing_target"}, train, valid)


def test_validation_type_mismatch_fails_before_training(session, ten_rows):
    train = session.upload_dataframe(ten_rows)
    valid = session.upload_dataframe(
        ten_rows.assign(label=ten_rows["label"].eq("yes").astype(float))
    )
    before = len(session.list_handles())

    with pytest.raises(errors.ValidationError, match="label"):
        session.fit(
            "deeplearning", {"x": ["x", "y"], "y": "label", "epochs": 1}, train, valid
        )
    assert len(session.list_handles()) == before


def test_reproducible_fits_match(session, ten_rows):
    data = session.upload_dataframe(ten_rows)
    options = {
        "x": ["x", "y"],
        "y": "label",
        "hidden": [4],
        "epochs": 2,
        "reproducible": True,
        "seed": 42,
    }
    first = session.fit("deeplearning", options, data)
    second = session.fit("deeplearning", options, data)

    assert session.head(session.predict(first, data), 10).equals(
        session.head(session.predict(second, data), 10)
    )


def test_performance_schema_mismatch_is_state_error(session, classifier, tabular):
    without_color = session.upload_dataframe(tabular.drop(columns=["color"]))
    with pytest.raises(errors.StateError, match="color"):
        session.performance(classifier, without_color)

    retyped = session.as_factor(session.upload_dataframe(tabular), "x1")
    with pytest.raises(errors.StateError, match="x1"):
        session.performance(classifier, retyped)


def test_save_load_round_trip(session, classifier, tabular_data, tmp_path):
    _, _, test = tabular_data
    path = session.save(classifier, str(tmp_path))

    with pytest.raises(errors.ValidationError):
        session.save(classifier, str(tmp_path))
    assert session.save(classifier, str(tmp_path), force=True) == path

    loaded = session.load(path)
    assert loaded.id != classifier.id
    assert loaded.feature_spec == classifier.feature_spec
    assert loaded.training_metrics == classifier.training_metrics

    before = session.head(session.predict(classifier, test), test.nrows)
    after = session.head(session.predict(loaded, test), test.nrows)
    assert before.equals(after)


def test_load_missing_path_is_not_found(session, tmp_path):
    with pytest.raises(errors.NotFoundError):
        session.load(str(tmp_path / "nothing"))


def test_checkpoint_continuation(session, classifier, tabular_data):
    train, valid, _ = tabular_data
    options = {"x": ["x1", "x2", "color"], "y": "label", **SMALL}

    with pytest.raises(errors.ValidationError, match="hidden"):
        session.fit(
            "deeplearning",
            {**options, "hidden": [16], "epochs": 4, "checkpoint": classifier.id},
            train,
        )
    with pytest.raises(errors.ValidationError, match="epochs"):
        session.fit(
            "deeplearning",
            {**options, "epochs": classifier.epochs_trained, "checkpoint": classifier.id},
            train,
        )

    continued = session.fit(
        "deeplearning", {**options, "epochs": 4, "checkpoint": classifier.id}, train, valid
    )
    assert continued.checkpoint_of == classifier.id
    assert continued.epochs_trained > classifier.epochs_trained


def test_grid_search_fits_every_combination(session, tabular_data):
    train, valid, _ = tabular_data
    models = session.grid_search(
        "deeplearning",
        {"hidden": [[4], [6]], "l1": [0.0, 1e-4]},
        {"x": ["x1", "x2"], "y": "label", "epochs": 1},
        train,
        valid,
        grid_id="grid_test",
    )
    assert len(models) == 4
    assert [m.parameters["hidden"] for m in models] == [[4], [4], [6], [6]]
    assert models[0].id == "grid_test_model_1"


def test_grid_search_validates_before_training(session, tabular_data):
    train, _, _ = tabular_data
    before = len(session.list_handles())
    with pytest.raises(errors.ValidationError):
        session.grid_search(
            "deeplearning",
            {"hidden": [[4], [0]]},
            {"x": ["x1", "x2"], "y": "label", "epochs": 1},
            train,
        )
    assert len(session.list_handles()) == before


def test_random_search(session, tabular_data):
    train, valid, _ = tabular_data
    models = session.random_search(
        "deeplearning",
        {"l2": tune.loguniform(1e-6, 1e-3), "activation": ["Tanh", "Rectifier"]},
        {"x": ["x1", "x2"], "y": "label", "hidden": [4], "epochs": 1},
        trials=2,
        training_data=train,
        validation_data=valid,
        seed=9,
    )
    assert len(models) == 2
    for model in models:
        assert 1e-6 <= model.parameters["l2"] <= 1e-3
        assert model.parameters["activation"] in ("Tanh", "Rectifier")


def test_cross_validation(session, tabular_data):
    train, _, _ = tabular_data
    model = session.fit(
        "deeplearning",
        {"x": ["x1", "x2"], "y": "label", "hidden": [4], "epochs": 1, "nfolds": 2, "seed": 3},
        train,
    )
    assert len(model.cross_validation_models) == 2
    assert model.cross_validation_metrics.nobs == train.nrows
    fold = session.get_model(model.cross_validation_models[0])
    assert fold.parameters["nfolds"] == 0


def test_varimp(session, classifier):
    importances = session.varimp(classifier)
    assert {v.variable for v in importances} == {"x1", "x2", "color"}
    assert importances[0].scaled_importance == pytest.approx(1.0)
    assert sum(v.percentage for v in importances) == pytest.approx(1.0)


def test_removed_handles_are_not_found(session, ten_rows):
    data = session.upload_dataframe(ten_rows)
    assert session.get_dataset(data.id) == data
    session.remove(data)
    with pytest.raises(errors.NotFoundError):
        session.head(data)
    with pytest.raises(errors.NotFoundError):
        session.get_dataset(data.id)


def test_cluster_status(session):
    status = session.cluster_status()
    assert status["resources"]["CPU"] == 4
    assert status["nodes"] == 1
