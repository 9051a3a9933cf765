"""
Test Suite for Model Module
============================

Tests for the train/test partition, the multi-learner harness and the
persisted model artifact.
"""

import pytest
import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, RegressorMixin

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import phpredict.model as model_module
from phpredict.errors import SchemaError, ConfigurationError
from phpredict.model import (
    LEARNER_FAMILIES,
    ModelArtifact,
    ModelHarness,
    ModelPerformanceRecord,
    build_learner,
    harness_from_config,
    predict,
    random_forest_grid,
    stratified_split,
    train_and_evaluate,
)
from phpredict.preprocessing import filter_outliers


def make_table(n_rows=100, n_predictors=4, seed=0):
    """pH driven by the first two predictors plus a little noise."""
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n_rows, n_predictors))
    df = pd.DataFrame(X, columns=[f'x{i}' for i in range(n_predictors)])
    df['ph'] = 8.5 + 0.3 * df['x0'] + 0.2 * df['x1'] + rng.normal(scale=0.05, size=n_rows)
    return df


class FailingRegressor(RegressorMixin, BaseEstimator):
    """Estimator whose fit always fails."""

    def __init__(self, alpha=1.0):
        self.alpha = alpha

    def fit(self, X, y):
        raise ValueError("solver did not converge")


class TestStratifiedSplit:
    """Tests for stratified_split."""

    @pytest.fixture
    def sample_data(self):
        return make_table()

    def test_split_sizes(self, sample_data):
        X_train, X_test, y_train, y_test = stratified_split(sample_data, 'ph', 0.8, seed=42)

        assert len(X_train) == 80
        assert len(X_test) == 20
        assert 'ph' not in X_train.columns
        assert set(X_train.index).isdisjoint(X_test.index)

    def test_same_seed_same_partition(self, sample_data):
        first = stratified_split(sample_data, 'ph', 0.8, seed=42)
        second = stratified_split(sample_data, 'ph', 0.8, seed=42)

        assert first[1].index.tolist() == second[1].index.tolist()

    def test_different_seed_different_partition(self, sample_data):
        first = stratified_split(sample_data, 'ph', 0.8, seed=1)
        second = stratified_split(sample_data, 'ph', 0.8, seed=2)

        assert set(first[1].index) != set(second[1].index)

    def test_test_partition_spans_target_range(self, sample_data):
        """Test every target quantile group is represented in the test rows."""
        _, X_test, _, _ = stratified_split(sample_data, 'ph', 0.8, seed=42, n_bins=5)

        groups = pd.qcut(sample_data['ph'], q=5, labels=False)
        assert groups.loc[X_test.index].value_counts().tolist() == [4, 4, 4, 4, 4]

    def test_tiny_table(self):
        """Test small tables fall back to a plain split instead of failing."""
        df = make_table(n_rows=5)

        X_train, X_test, _, _ = stratified_split(df, 'ph', 0.8, seed=42)

        assert (len(X_train), len(X_test)) == (4, 1)

    @pytest.mark.parametrize("ratio", [0.0, 1.0, 1.2])
    def test_invalid_ratio(self, sample_data, ratio):
        with pytest.raises(ConfigurationError):
            stratified_split(sample_data, 'ph', ratio)

    def test_ratio_leaving_no_test_rows(self):
        with pytest.raises(ConfigurationError):
            stratified_split(make_table(n_rows=2), 'ph', 0.9)


class TestLearners:
    """Tests for the learner registry."""

    @pytest.mark.parametrize("n_predictors, expected", [
        (1, [1]),
        (3, [1, 2]),
        (4, [2]),
        (30, [2, 5]),
    ])
    def test_random_forest_grid(self, n_predictors, expected):
        assert random_forest_grid(n_predictors) == expected

    @pytest.mark.parametrize("name", LEARNER_FAMILIES)
    def test_build_every_family(self, name):
        estimator, grid = build_learner(name, n_predictors=4, seed=1, n_estimators=10)

        assert hasattr(estimator, 'fit')
        if name == 'linear_regression':
            assert grid is None
        else:
            assert grid

    def test_mars_is_additive_linear_spline(self):
        """Test the MARS stand-in is a degree-1 spline basis with least squares."""
        estimator, grid = build_learner('mars', n_predictors=4)

        hinges = estimator.named_steps['hinges']
        assert hinges.degree == 1
        assert hinges.knots == 'uniform'
        assert type(estimator.named_steps['regression']).__name__ == 'LinearRegression'
        assert grid == {'hinges__n_knots': [3, 5, 7]}

    def test_unknown_learner(self):
        with pytest.raises(ConfigurationError):
            build_learner('gradient_boosting', n_predictors=4)


class TestModelHarness:
    """Tests for ModelHarness."""

    @pytest.fixture
    def sample_data(self):
        return make_table(n_rows=120)

    @pytest.fixture
    def harness(self):
        return ModelHarness(seed=42, n_estimators=25)

    def test_every_learner_reports(self, harness, sample_data):
        result = harness.train_and_evaluate(sample_data, 'ph')

        assert [r.model for r in result.records] == list(LEARNER_FAMILIES)
        assert all(r.status == 'ok' for r in result.records)
        assert all(r.stage == 'full' for r in result.records)
        for record in result.records:
            assert record.rmse >= 0
            assert record.mae >= 0
            assert record.r2 <= 1

    def test_champion_and_importance(self, harness, sample_data):
        result = harness.train_and_evaluate(sample_data, 'ph')

        assert result.champion.name == 'random_forest'
        assert result.champion.predictors == ['x0', 'x1', 'x2', 'x3']
        assert result.importance.index[0] == 'x0'
        assert result.importance.max() == pytest.approx(100.0)
        assert result.holdout.shape == (24, 1 + len(LEARNER_FAMILIES))

    def test_same_seed_reproducible(self, sample_data):
        first = ModelHarness(seed=7, n_estimators=25).train_and_evaluate(sample_data, 'ph')
        second = ModelHarness(seed=7, n_estimators=25).train_and_evaluate(sample_data, 'ph')

        for a, b in zip(first.records, second.records):
            assert a.model == b.model
            assert a.rmse == pytest.approx(b.rmse, rel=1e-9)
            assert a.r2 == pytest.approx(b.r2, rel=1e-9)
            assert a.best_params == b.best_params

    def test_records_accumulate_across_stages(self, sample_data):
        harness = ModelHarness(seed=42, n_estimators=25, learners=['random_forest', 'linear_regression'])

        harness.train_and_evaluate(sample_data, 'ph', stage='full')
        harness.train_and_evaluate(sample_data.drop(columns=['x3']), 'ph', stage='pruned')

        assert [r.stage for r in harness.records] == ['full', 'full', 'pruned', 'pruned']

    def test_failed_learner_is_flagged(self, monkeypatch, sample_data):
        """Test one failing learner does not abort the others."""
        original = model_module.build_learner

        def build_with_failing_svr(name, n_predictors, seed=42, n_estimators=500):
            if name == 'svr':
                return FailingRegressor(), {'alpha': [1.0]}
            return original(name, n_predictors, seed=seed, n_estimators=n_estimators)

        monkeypatch.setattr(model_module, 'build_learner', build_with_failing_svr)
        harness = ModelHarness(seed=42, n_estimators=25, learners=['svr', 'random_forest'])

        result = harness.train_and_evaluate(sample_data, 'ph')

        svr, forest = result.records
        assert svr.status == 'failed'
        assert np.isnan(svr.rmse)
        assert 'converge' in svr.error
        assert forest.status == 'ok'
        assert 'svr' not in result.artifacts

    def test_random_forest_required(self):
        with pytest.raises(ConfigurationError):
            ModelHarness(learners=['knn', 'svr'])

    def test_unknown_learner(self):
        with pytest.raises(ConfigurationError):
            ModelHarness(learners=['random_forest', 'xgboost'])

    def test_invalid_folds(self):
        with pytest.raises(ConfigurationError):
            ModelHarness(cv_folds=1)

    def test_missing_target(self, harness, sample_data):
        with pytest.raises(SchemaError):
            harness.train_and_evaluate(sample_data.drop(columns=['ph']), 'ph')

    def test_incomplete_table(self, harness, sample_data):
        sample_data.loc[3, 'x1'] = np.nan

        with pytest.raises(SchemaError, match="impute"):
            harness.train_and_evaluate(sample_data, 'ph')

    def test_from_config(self):
        harness = harness_from_config({
            'model': {'seed': 3, 'cv_folds': 4, 'learners': ['random_forest'], 'n_estimators': 10}
        })

        assert harness.seed == 3
        assert harness.cv_folds == 4
        assert harness.learners == ['random_forest']

    def test_module_level_train_and_evaluate(self, sample_data):
        """Test the module-level call unpacks into records, champion and importance."""
        records, champion, importance = train_and_evaluate(
            sample_data, 'ph', 42, 0.75, learners=['random_forest'], n_estimators=10
        )

        assert [r.model for r in records] == ['random_forest']
        assert champion.name == 'random_forest'
        assert champion.training_info['n_samples'] == 90
        assert importance.max() == pytest.approx(100.0)


class TestOutlierStage:
    """Outlier filtering ahead of the harness on a table with gross errors."""

    @pytest.fixture
    def contaminated(self):
        df = make_table(n_rows=100, seed=11)
        extremes = df.index[::10]
        mean, std = df['ph'].mean(), df['ph'].std()
        signs = np.resize([1, -1], len(extremes))
        df.loc[extremes, 'ph'] = mean + signs * 1000 * std
        return df, extremes

    def test_extremes_removed(self, contaminated):
        df, extremes = contaminated

        filtered, before, after = filter_outliers(df, k=5.0)

        assert (before, after) == (100, 90)
        assert set(filtered.index).isdisjoint(extremes)

    def test_filtering_improves_forest(self, contaminated):
        df, _ = contaminated
        filtered, _, _ = filter_outliers(df, k=5.0)
        options = dict(seed=42, learners=['random_forest'], n_estimators=100)

        raw_records, _, _ = train_and_evaluate(df, 'ph', **options)
        clean_records, _, _ = train_and_evaluate(filtered, 'ph', **options)

        assert clean_records[0].r2 > raw_records[0].r2 + 0.1


class TestModelArtifact:
    """Tests for ModelArtifact."""

    @pytest.fixture
    def artifact(self):
        df = make_table(n_rows=60)
        _, champion, _ = train_and_evaluate(df, 'ph', learners=['random_forest'], n_estimators=10)
        return champion

    def test_predict(self, artifact):
        new_rows = make_table(n_rows=5, seed=9).drop(columns=['ph'])

        predictions = predict(artifact, new_rows)

        assert predictions.shape == (5,)
        assert np.isfinite(predictions).all()

    def test_extra_columns_ignored(self, artifact):
        new_rows = make_table(n_rows=5, seed=9)
        new_rows['unused'] = 1.0

        assert artifact.predict(new_rows).shape == (5,)

    def test_empty_table(self, artifact):
        """Test a zero-row table gives an empty prediction array."""
        new_rows = make_table(n_rows=5, seed=9).iloc[:0]

        predictions = artifact.predict(new_rows)

        assert predictions.shape == (0,)
        assert predictions.dtype == float

    def test_missing_predictor(self, artifact):
        new_rows = make_table(n_rows=5, seed=9).drop(columns=['x2'])

        with pytest.raises(SchemaError, match="x2"):
            artifact.predict(new_rows)

    def test_incomplete_predictors(self, artifact):
        new_rows = make_table(n_rows=5, seed=9)
        new_rows.loc[0, 'x0'] = np.nan

        with pytest.raises(SchemaError, match="impute"):
            artifact.predict(new_rows)

    def test_save_load(self, artifact, tmp_path):
        path = tmp_path / "models" / "forest.joblib"
        new_rows = make_table(n_rows=5, seed=9)

        artifact.save(str(path))
        loaded = ModelArtifact.load(str(path))

        assert loaded.name == artifact.name
        assert loaded.predictors == artifact.predictors
        assert loaded.target == 'ph'
        np.testing.assert_array_equal(loaded.predict(new_rows), artifact.predict(new_rows))


class TestPerformanceRecord:
    """Tests for ModelPerformanceRecord."""

    def test_failed_record(self):
        record = ModelPerformanceRecord.failed('svr', 'pruned', 'boom')

        assert record.status == 'failed'
        assert record.to_dict()['rmse'] is None
        assert record.to_dict()['stage'] == 'pruned'

    def test_to_dict_plain_values(self):
        record = ModelPerformanceRecord(
            'neural_network', rmse=0.1, r2=0.5, mae=0.08,
            best_params={'regressor__mlp__hidden_layer_sizes': (5,), 'alpha': np.float64(0.1)}
        )

        params = record.to_dict()['best_params']

        assert params['regressor__mlp__hidden_layer_sizes'] == [5]
        assert type(params['alpha']) is float


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
