"""
Prediction Pipeline Module
==========================

Orchestrates conditioning, model comparison and scoring of the evaluation
table.

Workflow:
    1. Drop rows without a target, impute training predictors
    2. Compare learners on the full table; rank features with the random forest
    3. Prune low-importance features, compare again (Model 1)
    4. Optionally filter outliers, compare again (Model 2)
    5. Impute the evaluation table and predict with the configured model
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
import pandas as pd

from .data_loader import validate_table
from .errors import ConfigurationError, SchemaError
from .model import (
    ModelArtifact,
    ModelPerformanceRecord,
    TrainingResult,
    harness_from_config,
)
from .preprocessing import (
    PruneDecision,
    _check_importance_factor,
    _check_multiplier,
    apply_prune,
    filter_outliers,
    impute,
    prune,
)

logger = logging.getLogger(__name__)

PRODUCTION_MODELS = ('model_1', 'model_2')
IMPUTE_REFERENCES = ('training', 'evaluation')


@dataclass
class PipelineModels:
    """Everything learned from the training table."""
    target_column: str
    importance: pd.Series
    prune_decision: PruneDecision
    records: List[ModelPerformanceRecord]
    model_1: ModelArtifact
    model_2: Optional[ModelArtifact]
    training_tables: Dict[str, pd.DataFrame]
    stage_results: Dict[str, TrainingResult]
    outlier_counts: Optional[Tuple[int, int]] = None
    rows_without_target: int = 0


@dataclass
class PipelineResult:
    """Predictions for the evaluation table plus the reports behind them."""
    predictions: np.ndarray
    production_model: str
    model: ModelArtifact
    models: PipelineModels
    evaluation_table: pd.DataFrame
    imputation: Dict[str, Any] = field(default_factory=dict)

    @property
    def records(self) -> List[ModelPerformanceRecord]:
        return self.models.records

    @property
    def importance(self) -> pd.Series:
        return self.models.importance

    @property
    def prune_decision(self) -> PruneDecision:
        return self.models.prune_decision


def _settings(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    config = config or {}
    data_config = config.get('data', {}) or {}
    prep_config = config.get('preprocessing', {}) or {}
    pipe_config = config.get('pipeline', {}) or {}

    settings = {
        'target_column': data_config.get('target_column', 'ph'),
        'importance_factor': prep_config.get('importance_factor', 0.3),
        'filter_outliers': prep_config.get('filter_outliers', True),
        'outlier_multiplier': prep_config.get('outlier_multiplier', 5.0),
        'impute_reference': prep_config.get('impute_reference', 'training'),
        'production_model': pipe_config.get('production_model', 'model_1'),
        'round_decimals': pipe_config.get('round_decimals', 5),
    }

    if settings['production_model'] not in PRODUCTION_MODELS:
        raise ConfigurationError(
            f"production_model must be one of {PRODUCTION_MODELS}, got {settings['production_model']!r}"
        )
    if settings['production_model'] == 'model_2' and not settings['filter_outliers']:
        raise ConfigurationError("production_model 'model_2' requires filter_outliers to be enabled")
    if settings['impute_reference'] not in IMPUTE_REFERENCES:
        raise ConfigurationError(
            f"impute_reference must be one of {IMPUTE_REFERENCES}, got {settings['impute_reference']!r}"
        )
    _check_importance_factor(settings['importance_factor'])
    if settings['filter_outliers']:
        _check_multiplier(settings['outlier_multiplier'])
    return settings


def prepare_training_table(df: pd.DataFrame, target_column: str) -> Tuple[pd.DataFrame, int]:
    """
    Make the training table complete.

    Rows with a missing target are dropped; missing predictor values are
    imputed from the remaining rows.

    Returns:
        Tuple of (complete_table, rows_dropped)
    """
    validate_table(df, target_column=target_column)

    has_target = df[target_column].notna()
    dropped = int((~has_target).sum())
    if dropped:
        logger.info(f"Dropping {dropped} training rows without a '{target_column}' value")

    labelled = df.loc[has_target]
    predictors = impute(labelled.drop(columns=[target_column]))
    predictors[target_column] = labelled[target_column]

    return predictors[df.columns.tolist()], dropped


def fit_pipeline_models(
    train: pd.DataFrame,
    config: Optional[Dict[str, Any]] = None
) -> PipelineModels:
    """
    Learn the importance report, the prune decision and both candidate models.

    Args:
        train: Numeric training table including the target column
        config: Configuration dictionary

    Returns:
        PipelineModels
    """
    settings = _settings(config)
    target = settings['target_column']
    harness = harness_from_config(config or {})

    logger.info("=" * 60)
    logger.info("CONDITIONING TRAINING DATA")
    logger.info("=" * 60)
    complete, rows_without_target = prepare_training_table(train, target)

    full = harness.train_and_evaluate(complete, target, stage='full')

    decision = prune(full.importance, settings['importance_factor'])
    logger.info(
        f"Pruning cutoff {decision.cutoff:.4f} "
        f"(factor {decision.importance_factor}): dropping {decision.dropped}"
    )
    if not decision.kept:
        raise ConfigurationError(
            f"importance_factor {decision.importance_factor} prunes every predictor "
            f"(all scores <= {decision.cutoff:.4f})"
        )
    pruned = apply_prune(complete, decision)

    stage_results = {'full': full}
    training_tables = {'full': complete, 'model_1': pruned}

    model_1_result = harness.train_and_evaluate(pruned, target, stage='pruned')
    stage_results['pruned'] = model_1_result

    model_2 = None
    outlier_counts = None
    if settings['filter_outliers']:
        filtered, before, after = filter_outliers(pruned, k=settings['outlier_multiplier'])
        outlier_counts = (before, after)
        training_tables['model_2'] = filtered

        model_2_result = harness.train_and_evaluate(filtered, target, stage='pruned_filtered')
        stage_results['pruned_filtered'] = model_2_result
        model_2 = model_2_result.champion

    return PipelineModels(
        target_column=target,
        importance=full.importance,
        prune_decision=decision,
        records=list(harness.records),
        model_1=model_1_result.champion,
        model_2=model_2,
        training_tables=training_tables,
        stage_results=stage_results,
        outlier_counts=outlier_counts,
        rows_without_target=rows_without_target
    )


def prepare_evaluation_table(
    evaluation: pd.DataFrame,
    model: ModelArtifact,
    decision: PruneDecision,
    reference: Optional[pd.DataFrame] = None
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Strip the target and pruned columns from the evaluation table and impute it.

    Args:
        evaluation: Numeric evaluation table
        model: Artifact whose predictors the table must provide
        decision: Prune decision applied to the training table
        reference: Training predictors to learn the fills from (optional)

    Returns:
        Tuple of (complete_table, imputation_summary)
    """
    table = evaluation.drop(columns=[c for c in [model.target] if c in evaluation.columns])
    table = apply_prune(table, decision)

    absent = [col for col in model.predictors if col not in table.columns]
    if absent:
        raise SchemaError(f"Evaluation table is missing predictor columns: {absent}")
    table = table[model.predictors]

    if reference is not None:
        reference = reference[model.predictors]

    missing = int(table.isna().sum().sum())
    logger.info(f"Evaluation table: {len(table)} rows, {missing} missing values")

    completed = impute(table, reference=reference)
    summary = {
        'missing_before': missing,
        'missing_after': int(completed.isna().sum().sum())
    }
    return completed, summary


def run_prediction_pipeline(
    train: pd.DataFrame,
    evaluation: pd.DataFrame,
    config: Optional[Dict[str, Any]] = None
) -> PipelineResult:
    """
    Execute the complete prediction workflow.

    Args:
        train: Numeric training table including the target
        evaluation: Numeric evaluation table (target absent or empty)
        config: Configuration dictionary

    Returns:
        PipelineResult
    """
    settings = _settings(config)

    models = fit_pipeline_models(train, config)

    production = settings['production_model']
    model = models.model_1 if production == 'model_1' else models.model_2
    logger.info(f"Production model: {production} ({model.name}, {len(model.predictors)} predictors)")

    reference = None
    if settings['impute_reference'] == 'training':
        reference = models.training_tables[production]

    logger.info("=" * 60)
    logger.info("SCORING EVALUATION DATA")
    logger.info("=" * 60)
    table, imputation = prepare_evaluation_table(
        evaluation, model, models.prune_decision, reference
    )

    predictions = np.round(model.predict(table), settings['round_decimals'])

    logger.info("=" * 60)
    logger.info("PREDICTION COMPLETE")
    logger.info(f"  Rows scored: {len(predictions)}")
    if len(predictions):
        logger.info(f"  Mean prediction: {predictions.mean():.5f}")
    logger.info("=" * 60)

    return PipelineResult(
        predictions=predictions,
        production_model=production,
        model=model,
        models=models,
        evaluation_table=table,
        imputation=imputation
    )


def export_predictions(
    predictions: np.ndarray,
    output_path: str,
    target_column: str = 'ph',
    include_timestamp: bool = False
) -> str:
    """
    Export predictions to CSV file.

    Args:
        predictions: Predicted values array
        output_path: Directory to save the file
        target_column: Column name for the predictions
        include_timestamp: Whether to add timestamp to filename

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame({target_column: np.asarray(predictions).ravel()})
    df.index = df.index + 1
    df.index.name = 'row'

    if include_timestamp:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"predictions_{timestamp}.csv"
    else:
        filename = "predictions.csv"

    filepath = output_path / filename
    df.to_csv(filepath)

    logger.info(f"Predictions exported to {filepath}")
    return str(filepath)


def print_prediction_results(result: PipelineResult, n_rows: int = 10) -> None:
    """
    Print formatted prediction results to console.

    Args:
        result: Result from run_prediction_pipeline
        n_rows: Number of predictions to show
    """
    models = result.models
    print("\n" + "=" * 70)
    print("PREDICTION RESULTS")
    print("=" * 70)

    print(f"Production model: {result.production_model} ({result.model.name})")
    print(f"Pruned columns ({len(models.prune_decision.dropped)}): {', '.join(models.prune_decision.dropped)}")
    if models.outlier_counts is not None:
        before, after = models.outlier_counts
        print(f"Outlier filter: kept {after} of {before} training rows")
    print(f"Evaluation missing values: {result.imputation.get('missing_before', 0)} "
          f"-> {result.imputation.get('missing_after', 0)}")

    print(f"\n{'Row':<8} {models.target_column:<15}")
    print("-" * 70)
    for i, value in enumerate(result.predictions[:n_rows], start=1):
        print(f"{i:<8} {value:<15.5f}")
    if len(result.predictions) > n_rows:
        print(f"... ({len(result.predictions) - n_rows} more)")

    print("=" * 70 + "\n")
