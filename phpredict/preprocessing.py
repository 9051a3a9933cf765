"""
Data Conditioning Module
========================

Feature pruning, outlier filtering and missing-value imputation.

Every function takes a table and returns a new one; the caller's DataFrame
is never modified in place.

Functions:
    - rank_importance: Scaled (0-100) importance scores from a fitted tree ensemble
    - prune: Quantile cutoff over an importance report
    - apply_prune: Drop the pruned columns from a table
    - compute_outlier_bounds: Per-column IQR fences
    - filter_outliers: Keep rows that sit inside every column's fences
    - impute: Single-pass regression imputation with median fallback
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Tuple, Optional, List

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression
from sklearn.pipeline import Pipeline

from .data_loader import validate_table
from .errors import (
    SchemaError,
    InsufficientDataError,
    DegenerateFitError,
    ConfigurationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Feature importance and pruning
# ---------------------------------------------------------------------------

def _unwrap_estimator(model: Any) -> Any:
    """Reach the fitted estimator inside a search object or pipeline."""
    if hasattr(model, 'best_estimator_'):
        model = model.best_estimator_
    if isinstance(model, Pipeline):
        model = model.steps[-1][1]
    return model


def rank_importance(model: Any, predictors: List[str]) -> pd.Series:
    """
    Score each predictor's contribution to a fitted tree-ensemble model.

    Raw impurity importances are scaled so the most important predictor
    scores 100. The model is only read.

    Args:
        model: Fitted estimator exposing ``feature_importances_``
            (a fitted GridSearchCV or Pipeline wrapping one is accepted)
        predictors: Predictor names in the order the model was trained on

    Returns:
        Series of scores indexed by predictor name, highest first

    Raises:
        TypeError: If the model exposes no per-feature importances
        SchemaError: If the predictor list does not match the model
    """
    estimator = _unwrap_estimator(model)
    raw = getattr(estimator, 'feature_importances_', None)
    if raw is None:
        raise TypeError(
            f"{type(estimator).__name__} does not expose per-feature importances "
            f"(a fitted tree ensemble is required)"
        )

    raw = np.asarray(raw, dtype=float)
    predictors = list(predictors)
    if len(raw) != len(predictors):
        raise SchemaError(
            f"Model has {len(raw)} importances but {len(predictors)} predictors were given"
        )

    top = raw.max() if len(raw) else 0.0
    scaled = raw / top * 100.0 if top > 0 else np.zeros_like(raw)

    report = pd.Series(scaled, index=predictors, name='importance')
    return report.sort_values(ascending=False, kind='mergesort')


@dataclass
class PruneDecision:
    """Cutoff over an importance report and the columns it removes."""
    cutoff: float
    importance_factor: float
    dropped: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cutoff': self.cutoff,
            'importance_factor': self.importance_factor,
            'dropped': list(self.dropped),
            'kept': list(self.kept)
        }


def prune(report: pd.Series, importance_factor: float = 0.3) -> PruneDecision:
    """
    Mark the least important predictors for removal.

    The cutoff is the ``importance_factor`` quantile of the scores (linear
    interpolation). Every predictor scoring at or below the cutoff is
    dropped, so ties at the cutoff all go and the dropped share can exceed
    the nominal factor.

    Args:
        report: Importance scores indexed by predictor
        importance_factor: Quantile in [0, 1), e.g. 0.3 drops the bottom 30%

    Returns:
        PruneDecision

    Raises:
        ConfigurationError: If importance_factor is outside [0, 1)
        SchemaError: If the report is empty or holds missing scores
    """
    _check_importance_factor(importance_factor)
    if len(report) == 0:
        raise SchemaError("Cannot prune from an empty importance report")

    scores = report.to_numpy(dtype=float)
    if np.isnan(scores).any():
        raise SchemaError("Importance report contains missing scores")

    cutoff = float(np.quantile(scores, importance_factor))
    dropped = [col for col, score in report.items() if score <= cutoff]
    kept = [col for col in report.index if col not in dropped]

    return PruneDecision(
        cutoff=cutoff,
        importance_factor=float(importance_factor),
        dropped=dropped,
        kept=kept
    )


def _check_importance_factor(importance_factor: float) -> None:
    if importance_factor is None or not 0 <= importance_factor < 1:
        raise ConfigurationError(
            f"importance_factor must be in [0, 1), got {importance_factor}"
        )


def apply_prune(df: pd.DataFrame, decision: PruneDecision) -> pd.DataFrame:
    """Return a copy of the table without the pruned columns that it contains."""
    to_drop = [col for col in decision.dropped if col in df.columns]
    return df.drop(columns=to_drop)


# ---------------------------------------------------------------------------
# Outlier filtering
# ---------------------------------------------------------------------------

def _check_multiplier(k: float) -> None:
    if k is None or not np.isfinite(k) or k < 0:
        raise ConfigurationError(f"IQR multiplier must be a finite value >= 0, got {k}")


def compute_outlier_bounds(
    df: pd.DataFrame,
    k: float = 5.0,
    columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Compute IQR fences for each numeric column.

    Args:
        df: Table the fences are derived from
        k: Interquartile-range multiplier
        columns: Columns to fence (default: all numeric columns)

    Returns:
        DataFrame indexed by column with q1, q3, iqr, lower and upper
    """
    _check_multiplier(k)

    if columns is None:
        columns = df.select_dtypes(include=[np.number]).columns.tolist()
    values = df[list(columns)]

    q1 = values.quantile(0.25)
    q3 = values.quantile(0.75)
    iqr = q3 - q1

    return pd.DataFrame({
        'q1': q1,
        'q3': q3,
        'iqr': iqr,
        'lower': q1 - k * iqr,
        'upper': q3 + k * iqr
    })


def filter_outliers(
    df: pd.DataFrame,
    k: float = 5.0,
    columns: Optional[List[str]] = None
) -> Tuple[pd.DataFrame, int, int]:
    """
    Drop rows that fall outside any column's IQR fences.

    A row survives only if every fenced column lies within
    [Q1 - k*IQR, Q3 + k*IQR]. Fences come from the table passed in. A
    constant column fences to exactly its value. Missing cells never
    disqualify a row.

    Args:
        df: Table to filter
        k: Interquartile-range multiplier (>= 0)
        columns: Columns to fence (default: all numeric columns)

    Returns:
        Tuple of (filtered_table, rows_before, rows_after)

    Raises:
        ConfigurationError: If k is negative
        SchemaError: If the table is not numeric or a column is absent
    """
    _check_multiplier(k)
    validate_table(df, columns=columns)

    bounds = compute_outlier_bounds(df, k, columns)
    values = df[bounds.index.tolist()]

    inside = values.ge(bounds['lower'], axis='columns') & values.le(bounds['upper'], axis='columns')
    inside = inside | values.isna()
    keep = inside.all(axis=1)

    filtered = df.loc[keep].copy()
    before, after = len(df), len(filtered)

    offending = (~inside).sum()
    for col, count in offending[offending > 0].items():
        logger.debug(
            f"Column '{col}': {count} rows outside "
            f"[{bounds.at[col, 'lower']:.4f}, {bounds.at[col, 'upper']:.4f}]"
        )
    logger.info(f"Outlier filter (k={k}): kept {after} of {before} rows ({before - after} dropped)")

    return filtered, before, after


# ---------------------------------------------------------------------------
# Imputation
# ---------------------------------------------------------------------------

@dataclass
class ImputationModel:
    """How one column's missing entries are filled."""
    column: str
    predictors: List[str]
    regressor: Optional[LinearRegression]
    fallback: float
    n_training_rows: int
    method: str


def _fit_regression(X: np.ndarray, y: np.ndarray) -> LinearRegression:
    """Ordinary least squares, refusing rank-deficient designs."""
    design = np.column_stack([np.ones(len(X)), X])
    rank = np.linalg.matrix_rank(design)
    if rank < design.shape[1]:
        raise DegenerateFitError(
            f"design matrix has rank {rank}, needs {design.shape[1]}"
        )
    return LinearRegression().fit(X, y)


class RegressionImputer:
    """
    Single-pass regression imputer.

    For every column with missing values, in column order, a linear
    regression is fitted on the columns that are complete in the table
    being imputed. Eligibility is a snapshot of that table: columns filled
    earlier in the pass never become predictors. Columns with too few rows
    or no eligible predictors are filled with the median of their observed
    values.
    """

    def __init__(self):
        self.models_: Dict[str, ImputationModel] = {}
        self.columns_: Optional[List[str]] = None
        self._is_fitted = False

    def fit(
        self,
        df: pd.DataFrame,
        reference: Optional[pd.DataFrame] = None
    ) -> 'RegressionImputer':
        """
        Build one ImputationModel per incomplete column.

        Args:
            df: Table whose missing values will be filled
            reference: Table the regressions and medians are learned from
                (default: ``df`` itself)

        Returns:
            Self for method chaining

        Raises:
            SchemaError: If either table breaks the schema
            InsufficientDataError: If a column has no observed values in the source
        """
        validate_table(df)
        source = df if reference is None else reference
        if reference is not None:
            validate_table(reference)

        complete = [col for col in df.columns if not df[col].isna().any()]
        incomplete = [col for col in df.columns if col not in complete]

        if reference is not None:
            absent = [col for col in df.columns if col not in reference.columns]
            if absent:
                raise SchemaError(f"Reference table is missing columns: {absent}")

        self.models_ = {}
        for col in incomplete:
            predictors = [c for c in complete if c != col]
            self.models_[col] = self._fit_column(
                source, col, predictors, restrict_rows=reference is not None
            )

        self.columns_ = df.columns.tolist()
        self._is_fitted = True
        return self

    def _fit_column(
        self,
        source: pd.DataFrame,
        col: str,
        predictors: List[str],
        restrict_rows: bool
    ) -> ImputationModel:
        observed = source[col].dropna()
        if observed.empty:
            raise InsufficientDataError(col)
        fallback = float(observed.median())

        rows = source[col].notna()
        if restrict_rows and predictors:
            rows &= source[predictors].notna().all(axis=1)
        n_rows = int(rows.sum())

        if n_rows > 1 and predictors:
            X = source.loc[rows, predictors].to_numpy(dtype=float)
            y = source.loc[rows, col].to_numpy(dtype=float)
            try:
                regressor = _fit_regression(X, y)
            except DegenerateFitError as exc:
                logger.warning(
                    f"Regression for '{col}' is degenerate ({exc}); "
                    f"filling with median {fallback:.5f}"
                )
            else:
                return ImputationModel(col, predictors, regressor, fallback, n_rows, 'regression')

        return ImputationModel(col, [], None, fallback, n_rows, 'median')

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Fill missing values using the fitted models.

        Rows whose predictor values are themselves missing get the
        column's fallback median.

        Args:
            df: Table to fill (same columns as the fitted table)

        Returns:
            New table with no missing values in the modeled columns
        """
        if not self._is_fitted:
            raise ValueError("Imputer must be fitted before transform. Call fit() first.")

        validate_table(df)
        unmodeled = [
            col for col in df.columns
            if col not in self.models_ and df[col].isna().any()
        ]
        if unmodeled:
            raise SchemaError(f"No imputation model fitted for incomplete columns: {unmodeled}")

        result = df.copy()
        for col, model in self.models_.items():
            if col not in df.columns:
                raise SchemaError(f"Column '{col}' not found in table")

            missing = df[col].isna()
            if not missing.any():
                continue

            if model.method == 'regression':
                result.loc[missing, col] = self._predict_missing(df, model, missing)
            else:
                result.loc[missing, col] = model.fallback

        return result

    def _predict_missing(
        self,
        df: pd.DataFrame,
        model: ImputationModel,
        missing: pd.Series
    ) -> pd.Series:
        X = df.loc[missing, model.predictors]
        filled = pd.Series(model.fallback, index=X.index, dtype=float)

        usable = X.notna().all(axis=1)
        if usable.any():
            predicted = model.regressor.predict(X.loc[usable].to_numpy(dtype=float))
            finite = np.isfinite(predicted)
            if not finite.all():
                logger.warning(
                    f"Non-finite regression output for '{model.column}' in "
                    f"{int((~finite).sum())} rows; using median"
                )
                predicted = np.where(finite, predicted, model.fallback)
            filled.loc[usable] = predicted

        return filled

    def fit_transform(
        self,
        df: pd.DataFrame,
        reference: Optional[pd.DataFrame] = None
    ) -> pd.DataFrame:
        """Fit on ``df`` (or ``reference``) and fill ``df``."""
        return self.fit(df, reference).transform(df)

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Per-column method, predictors and fallback."""
        return {
            col: {
                'method': model.method,
                'predictors': list(model.predictors),
                'fallback': model.fallback,
                'n_training_rows': model.n_training_rows
            }
            for col, model in self.models_.items()
        }


def impute(df: pd.DataFrame, reference: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Fill every missing value in a numeric table.

    Args:
        df: Table with zero or more incomplete columns
        reference: Table to learn the fills from (default: ``df``)

    Returns:
        New, fully populated table

    Raises:
        InsufficientDataError: If a column has no observed values to fall back on
    """
    imputer = RegressionImputer()
    result = imputer.fit_transform(df, reference)

    methods = [model.method for model in imputer.models_.values()]
    if methods:
        logger.info(
            f"Imputed {len(methods)} columns: "
            f"{methods.count('regression')} by regression, {methods.count('median')} by median"
        )
    return result
