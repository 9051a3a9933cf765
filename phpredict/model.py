"""
Model Training Module
=====================

Cross-validated comparison of several regression learner families.

Features:
    - Stratified-by-value train/test partition with a fixed seed
    - k-fold grid search for every learner with hyperparameters
    - RMSE, R², MAE on the held-out partition
    - Random forest artifact and importance report for feature pruning
    - Model persistence (save/load)
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, List, NamedTuple

import numpy as np
import pandas as pd
import joblib
from sklearn.compose import TransformedTargetRegressor
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LinearRegression
from sklearn.model_selection import GridSearchCV, KFold, cross_val_score, train_test_split
from sklearn.neighbors import KNeighborsRegressor
from sklearn.neural_network import MLPRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import SplineTransformer, StandardScaler
from sklearn.svm import SVR

from .data_loader import validate_table
from .errors import SchemaError, ConfigurationError
from .evaluation import calculate_metrics
from .preprocessing import rank_importance

logger = logging.getLogger(__name__)

LEARNER_FAMILIES = (
    'knn',
    'mars',
    'neural_network',
    'svr',
    'random_forest',
    'linear_regression',
)
PRIMARY_LEARNER = 'random_forest'


def _scaled_target(regressor: Pipeline) -> TransformedTargetRegressor:
    return TransformedTargetRegressor(regressor=regressor, transformer=StandardScaler())


def build_learner(
    name: str,
    n_predictors: int,
    seed: int = 42,
    n_estimators: int = 500
) -> Tuple[Any, Optional[Dict[str, List[Any]]]]:
    """
    Create an unfitted learner and its hyperparameter grid.

    'mars' is an additive piecewise-linear spline (MARS approximation),
    not an adaptive MARS fit.

    Args:
        name: One of LEARNER_FAMILIES
        n_predictors: Number of predictor columns
        seed: Random state for stochastic learners
        n_estimators: Trees in the random forest

    Returns:
        Tuple of (estimator, grid); grid is None for learners without
        hyperparameters
    """
    if name == 'knn':
        estimator = Pipeline([
            ('scaler', StandardScaler()),
            ('knn', KNeighborsRegressor())
        ])
        return estimator, {'knn__n_neighbors': [5, 7, 9, 11]}

    if name == 'mars':
        # MARS approximation: additive piecewise-linear spline on fixed uniform
        # knots. No adaptive knot search, pruning pass or interaction terms.
        estimator = Pipeline([
            ('hinges', SplineTransformer(degree=1, knots='uniform', extrapolation='linear')),
            ('regression', LinearRegression())
        ])
        return estimator, {'hinges__n_knots': [3, 5, 7]}

    if name == 'neural_network':
        estimator = _scaled_target(Pipeline([
            ('scaler', StandardScaler()),
            ('mlp', MLPRegressor(max_iter=2000, random_state=seed))
        ]))
        return estimator, {
            'regressor__mlp__hidden_layer_sizes': [(5,), (10,)],
            'regressor__mlp__alpha': [1e-4, 1e-1]
        }

    if name == 'svr':
        estimator = _scaled_target(Pipeline([
            ('scaler', StandardScaler()),
            ('svr', SVR(kernel='rbf'))
        ]))
        return estimator, {'regressor__svr__C': [0.25, 0.5, 1.0, 2.0]}

    if name == 'random_forest':
        estimator = RandomForestRegressor(n_estimators=n_estimators, random_state=seed)
        return estimator, {'max_features': random_forest_grid(n_predictors)}

    if name == 'linear_regression':
        return LinearRegression(), None

    raise ConfigurationError(f"Unknown learner '{name}'. Choose from: {', '.join(LEARNER_FAMILIES)}")


def random_forest_grid(n_predictors: int) -> List[int]:
    """Split-feature candidates: 2 and floor(sqrt(p)), clipped to p."""
    candidates = {2, int(math.floor(math.sqrt(n_predictors)))}
    return sorted({min(max(c, 1), n_predictors) for c in candidates})


@dataclass
class ModelPerformanceRecord:
    """Held-out metrics of one learner in one pipeline stage."""
    model: str
    rmse: float
    r2: float
    mae: float
    stage: str = 'full'
    status: str = 'ok'
    cv_rmse: Optional[float] = None
    best_params: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failed(cls, model: str, stage: str, error: str) -> 'ModelPerformanceRecord':
        return cls(model=model, rmse=float('nan'), r2=float('nan'), mae=float('nan'),
                   stage=stage, status='failed', error=error)

    def to_dict(self) -> Dict[str, Any]:
        def clean(value):
            if value is None:
                return None
            value = float(value)
            return None if math.isnan(value) else value

        return {
            'stage': self.stage,
            'model': self.model,
            'rmse': clean(self.rmse),
            'r2': clean(self.r2),
            'mae': clean(self.mae),
            'cv_rmse': clean(self.cv_rmse),
            'status': self.status,
            'best_params': {k: _plain(v) for k, v in self.best_params.items()},
            'error': self.error
        }


def _plain(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, tuple):
        return list(value)
    return value


class ModelArtifact:
    """
    A fitted learner bound to the predictor columns it was trained on.
    """

    def __init__(
        self,
        name: str,
        estimator: Any,
        predictors: List[str],
        target: str,
        best_params: Optional[Dict[str, Any]] = None,
        cv_rmse: Optional[float] = None,
        training_info: Optional[Dict[str, Any]] = None
    ):
        self.name = name
        self.estimator = estimator
        self.predictors = list(predictors)
        self.target = target
        self.best_params = dict(best_params or {})
        self.cv_rmse = cv_rmse
        self.training_info = dict(training_info or {})

    def predict(self, df: pd.DataFrame) -> np.ndarray:
        """
        Predict the target for every row of a table.

        Args:
            df: Table containing at least the artifact's predictors

        Returns:
            1-D array of predictions

        Raises:
            SchemaError: If predictors are absent or contain missing values
        """
        absent = [col for col in self.predictors if col not in df.columns]
        if absent:
            raise SchemaError(f"Predictor columns not found in table: {absent}")

        X = df[self.predictors]
        validate_table(X)
        incomplete = X.columns[X.isna().any()].tolist()
        if incomplete:
            raise SchemaError(
                f"Predictor columns contain missing values, impute first: {incomplete}"
            )
        if len(X) == 0:
            return np.empty(0, dtype=float)

        return np.asarray(self.estimator.predict(X), dtype=float).ravel()

    def save(self, filepath: str) -> None:
        """
        Save the artifact to disk.

        Args:
            filepath: Path to save the model
        """
        state = {
            'name': self.name,
            'estimator': self.estimator,
            'predictors': self.predictors,
            'target': self.target,
            'best_params': self.best_params,
            'cv_rmse': self.cv_rmse,
            'training_info': self.training_info
        }

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'ModelArtifact':
        """
        Load an artifact from disk.

        Args:
            filepath: Path to the saved model

        Returns:
            Loaded ModelArtifact instance
        """
        state = joblib.load(filepath)
        artifact = cls(**state)
        logger.info(f"Model loaded from {filepath}")
        return artifact

    def __repr__(self) -> str:
        return f"ModelArtifact(name={self.name!r}, predictors={len(self.predictors)}, target={self.target!r})"


class TrainingResult(NamedTuple):
    records: List[ModelPerformanceRecord]
    champion: ModelArtifact
    importance: pd.Series
    artifacts: Dict[str, ModelArtifact]
    holdout: pd.DataFrame


def stratified_split(
    df: pd.DataFrame,
    target_column: str,
    split_ratio: float = 0.8,
    seed: int = 42,
    n_bins: int = 5
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.Series, pd.Series]:
    """
    Random train/test partition stratified by target quantile groups.

    The target is cut into up to ``n_bins`` quantile groups. The group
    count shrinks for small tables; when fewer than two groups with at
    least two rows each remain, the split is plain random.

    Returns:
        Tuple of (X_train, X_test, y_train, y_test)
    """
    _check_split_ratio(split_ratio)

    n_rows = len(df)
    n_train = int(math.floor(split_ratio * n_rows))
    n_test = n_rows - n_train
    if n_train < 2 or n_test < 1:
        raise ConfigurationError(
            f"split_ratio {split_ratio} leaves {n_train} training and {n_test} test rows"
        )

    y = df[target_column]
    X = df.drop(columns=[target_column])

    stratify = None
    n_groups = min(n_bins, n_train, n_test, n_rows // 2)
    if n_groups >= 2 and y.nunique() > 1:
        groups = pd.qcut(y, q=n_groups, labels=False, duplicates='drop')
        counts = groups.value_counts()
        if len(counts) >= 2 and counts.min() >= 2 and len(counts) <= n_test:
            stratify = groups

    if stratify is None:
        logger.debug("Target too small or too tied to stratify; using a plain random split")

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, train_size=split_ratio, random_state=seed, stratify=stratify
    )
    return X_train, X_test, y_train, y_test


def _check_split_ratio(split_ratio: float) -> None:
    if split_ratio is None or not 0 < split_ratio < 1:
        raise ConfigurationError(f"split_ratio must be in (0, 1), got {split_ratio}")


class ModelHarness:
    """
    Trains every registered learner family on one seeded partition.

    The harness owns the running sequence of performance records; each
    call to ``train_and_evaluate`` appends its records, so stages that
    share the seed, fold count and metric definitions stay comparable.
    """

    def __init__(
        self,
        seed: int = 42,
        split_ratio: float = 0.8,
        cv_folds: int = 3,
        learners: Optional[List[str]] = None,
        n_estimators: int = 500,
        n_jobs: int = 1,
        stratify_bins: int = 5
    ):
        """
        Initialize the harness.

        Args:
            seed: Seed for the partition, the CV folds and every learner
            split_ratio: Fraction of rows used for training
            cv_folds: Folds for the hyperparameter search
            learners: Learner families to compare (default: all)
            n_estimators: Trees in the random forest
            n_jobs: Parallel jobs for the grid search
            stratify_bins: Quantile groups used to stratify the split
        """
        _check_split_ratio(split_ratio)
        if cv_folds is None or cv_folds < 2:
            raise ConfigurationError(f"cv_folds must be at least 2, got {cv_folds}")

        learners = list(learners) if learners is not None else list(LEARNER_FAMILIES)
        unknown = [name for name in learners if name not in LEARNER_FAMILIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown learners {unknown}. Choose from: {', '.join(LEARNER_FAMILIES)}"
            )
        if PRIMARY_LEARNER not in learners:
            raise ConfigurationError(f"The '{PRIMARY_LEARNER}' learner is required for feature ranking")

        self.seed = seed
        self.split_ratio = split_ratio
        self.cv_folds = cv_folds
        self.learners = learners
        self.n_estimators = n_estimators
        self.n_jobs = n_jobs
        self.stratify_bins = stratify_bins

        self.records: List[ModelPerformanceRecord] = []

    def _cv(self) -> KFold:
        return KFold(n_splits=self.cv_folds, shuffle=True, random_state=self.seed)

    def _fit_learner(
        self,
        name: str,
        X_train: pd.DataFrame,
        y_train: pd.Series
    ) -> ModelArtifact:
        estimator, grid = build_learner(
            name, X_train.shape[1], seed=self.seed, n_estimators=self.n_estimators
        )
        start_time = datetime.now()

        if grid is None:
            scores = cross_val_score(
                estimator, X_train, y_train, cv=self._cv(),
                scoring='neg_root_mean_squared_error', n_jobs=self.n_jobs
            )
            cv_rmse = float(-scores.mean())
            fitted = estimator.fit(X_train, y_train)
            best_params = {}
        else:
            search = GridSearchCV(
                estimator, grid, cv=self._cv(),
                scoring='neg_root_mean_squared_error',
                n_jobs=self.n_jobs, error_score='raise'
            )
            search.fit(X_train, y_train)
            cv_rmse = float(-search.best_score_)
            fitted = search.best_estimator_
            best_params = dict(search.best_params_)

        duration = (datetime.now() - start_time).total_seconds()
        logger.info(f"  {name}: CV RMSE {cv_rmse:.5f} {best_params or ''} ({duration:.2f}s)")

        return ModelArtifact(
            name=name,
            estimator=fitted,
            predictors=X_train.columns.tolist(),
            target=y_train.name,
            best_params=best_params,
            cv_rmse=cv_rmse,
            training_info={
                'n_samples': int(len(X_train)),
                'n_features': int(X_train.shape[1]),
                'seed': self.seed,
                'cv_folds': self.cv_folds,
                'training_duration_seconds': duration,
                'trained_at': datetime.now().isoformat()
            }
        )

    def train_and_evaluate(
        self,
        df: pd.DataFrame,
        target_column: str,
        stage: str = 'full'
    ) -> TrainingResult:
        """
        Fit and score every learner family on one seeded partition.

        Args:
            df: Complete numeric table including the target
            target_column: Name of the target column
            stage: Label attached to this invocation's records

        Returns:
            TrainingResult(records, champion, importance, artifacts, holdout)

        Raises:
            SchemaError: If the target is absent or incomplete, or predictors hold NaN
            RuntimeError: If the random forest could not be trained
        """
        validate_table(df, target_column=target_column)
        incomplete = df.columns[df.isna().any()].tolist()
        if incomplete:
            raise SchemaError(f"Training table has missing values in {incomplete}; impute first")
        if df.shape[1] < 2:
            raise SchemaError("Training table needs at least one predictor column")

        logger.info("=" * 60)
        logger.info(f"TRAINING LEARNERS - stage '{stage}'")
        logger.info("=" * 60)
        logger.info(f"Table: {df.shape[0]} rows, {df.shape[1] - 1} predictors, seed {self.seed}")

        X_train, X_test, y_train, y_test = stratified_split(
            df, target_column, self.split_ratio, self.seed, self.stratify_bins
        )
        logger.info(f"Train/Test split: {len(X_train)} train samples, {len(X_test)} test samples")

        records = []
        artifacts = {}
        holdout = pd.DataFrame({'actual': y_test.to_numpy()}, index=y_test.index)

        for name in self.learners:
            try:
                artifact = self._fit_learner(name, X_train, y_train)
                y_pred = artifact.predict(X_test)
                metrics = calculate_metrics(y_test.to_numpy(), y_pred)
            except Exception as exc:
                logger.warning(f"  {name}: training failed ({exc})", exc_info=True)
                records.append(ModelPerformanceRecord.failed(name, stage, str(exc)))
                continue

            artifacts[name] = artifact
            holdout[name] = y_pred
            records.append(ModelPerformanceRecord(
                model=name,
                rmse=metrics['rmse'],
                r2=metrics['r2'],
                mae=metrics['mae'],
                stage=stage,
                cv_rmse=artifact.cv_rmse,
                best_params=artifact.best_params
            ))

        self.records.extend(records)

        if PRIMARY_LEARNER not in artifacts:
            raise RuntimeError(f"The '{PRIMARY_LEARNER}' learner failed; no model to rank features with")

        champion = artifacts[PRIMARY_LEARNER]
        importance = rank_importance(champion.estimator, champion.predictors)

        logger.info("=" * 60)
        logger.info(f"STAGE '{stage}' COMPLETE")
        for record in records:
            if record.status == 'ok':
                logger.info(f"  {record.model:<18} RMSE {record.rmse:.5f}  R² {record.r2:.5f}  MAE {record.mae:.5f}")
            else:
                logger.info(f"  {record.model:<18} FAILED")
        logger.info("=" * 60)

        return TrainingResult(records, champion, importance, artifacts, holdout)


def harness_from_config(config: Dict[str, Any]) -> ModelHarness:
    """
    Build a harness from the 'model' section of a configuration dictionary.
    """
    model_config = config.get('model', {}) or {}

    return ModelHarness(
        seed=model_config.get('seed', 42),
        split_ratio=model_config.get('split_ratio', 0.8),
        cv_folds=model_config.get('cv_folds', 3),
        learners=model_config.get('learners'),
        n_estimators=model_config.get('n_estimators', 500),
        n_jobs=model_config.get('n_jobs', 1),
        stratify_bins=model_config.get('stratify_bins', 5)
    )


def train_and_evaluate(
    df: pd.DataFrame,
    target_column: str,
    seed: int = 42,
    split_ratio: float = 0.8,
    **harness_options: Any
) -> Tuple[List[ModelPerformanceRecord], ModelArtifact, pd.Series]:
    """
    Run one harness invocation with a fresh record sequence.

    Use ``ModelHarness.train_and_evaluate`` for the per-learner artifacts
    and held-out predictions.

    Args:
        df: Complete numeric table including the target
        target_column: Name of the target column
        seed: Seed for the partition, folds and learners
        split_ratio: Fraction of rows used for training
        **harness_options: Further ModelHarness arguments

    Returns:
        Tuple of (records, champion, importance)
    """
    harness = ModelHarness(seed=seed, split_ratio=split_ratio, **harness_options)
    result = harness.train_and_evaluate(df, target_column)
    return result.records, result.champion, result.importance


def predict(model_artifact: ModelArtifact, df: pd.DataFrame) -> np.ndarray:
    """Predict the target for every row of ``df`` with a fitted artifact."""
    return model_artifact.predict(df)


def print_model_summary(artifact: ModelArtifact) -> None:
    """
    Print a summary of a fitted artifact.

    Args:
        artifact: Fitted model artifact
    """
    print("\n" + "=" * 50)
    print("MODEL SUMMARY")
    print("=" * 50)
    print(f"Learner: {artifact.name}")
    print(f"Target: {artifact.target}")
    print(f"Number of predictors: {len(artifact.predictors)}")
    if artifact.best_params:
        print("\nSelected hyperparameters:")
        for key, value in artifact.best_params.items():
            print(f"  - {key}: {value}")
    if artifact.cv_rmse is not None:
        print(f"\nCross-validated RMSE: {artifact.cv_rmse:.5f}")

    if artifact.training_info:
        print("\nTraining Info:")
        print(f"  - Duration: {artifact.training_info.get('training_duration_seconds', 0.0):.2f}s")
        print(f"  - Samples: {artifact.training_info.get('n_samples', 'N/A')}")

    print("=" * 50 + "\n")
