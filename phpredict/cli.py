"""
Command Line Interface
======================

Loads the training and evaluation tables, compares learners, prunes and
filters the training data, and scores the evaluation table.

Phases:
    train   - Condition the training table and compare learners
    predict - Everything in 'train', then impute and score the evaluation table

Usage:
    # Run complete pipeline
    phpredict --train data/raw/StudentData.csv --evaluation data/raw/StudentEvaluation.csv

    # Model comparison only
    phpredict --train data/raw/StudentData.csv --phase train

    # Score with the outlier-filtered model
    phpredict --train data/raw/StudentData.csv --evaluation data/raw/StudentEvaluation.csv \\
        --production-model model_2
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

import pandas as pd

from .data_loader import (
    load_config,
    load_data,
    encode_categoricals,
    validate_data,
    print_data_summary,
)
from .evaluation import generate_evaluation_report, print_evaluation_report
from .model import print_model_summary
from .prediction import (
    PipelineModels,
    PipelineResult,
    fit_pipeline_models,
    run_prediction_pipeline,
    export_predictions,
    print_prediction_results,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(f'pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log')
        ]
    )


def load_tables(
    train_path: str,
    evaluation_path: Optional[str]
) -> Tuple[pd.DataFrame, Optional[pd.DataFrame]]:
    """Load both tables and encode their text columns with one shared mapping."""
    print("\n📊 Loading data...")
    train = load_data(train_path)
    evaluation = load_data(evaluation_path) if evaluation_path else None

    train, evaluation, mappings = encode_categoricals(train, evaluation)
    for col, mapping in mappings.items():
        print(f"  Encoded '{col}': {mapping}")

    print_data_summary(train, title="TRAINING DATA SUMMARY")
    is_valid, _ = validate_data(train)
    if not is_valid:
        print("⚠️  Data validation warnings detected. Proceeding anyway...")

    return train, evaluation


def write_reports(models: PipelineModels, config: Dict[str, Any], production: str) -> None:
    """Save the comparison report, figures and the production model."""
    output_config = config.get('output', {})
    reports_dir = output_config.get('reports_path', 'reports/')

    holdout = models.stage_results['pruned'].holdout
    if production == 'model_2':
        holdout = models.stage_results['pruned_filtered'].holdout

    report = generate_evaluation_report(
        models.records,
        models.importance,
        holdout=holdout,
        prune_decision=models.prune_decision,
        output_dir=reports_dir
    )
    print(f"\n✓ Reports saved: {report['report_path']} ({len(report['figures'])} figures)")

    model = models.model_1 if production == 'model_1' else models.model_2
    model.save(output_config.get('model_path', 'models/production_model.joblib'))


def run_training_phase(train: pd.DataFrame, config: Dict[str, Any]) -> PipelineModels:
    """
    Condition the training table and compare learners.

    Args:
        train: Encoded training table
        config: Configuration dictionary

    Returns:
        PipelineModels
    """
    print("\n" + "=" * 70)
    print("PHASE: MODEL COMPARISON")
    print("=" * 70)

    models = fit_pipeline_models(train, config)

    print_evaluation_report(models.records)
    print_model_summary(models.model_1)

    production = config.get('pipeline', {}).get('production_model', 'model_1')
    write_reports(models, config, production)
    return models


def run_prediction_phase(
    train: pd.DataFrame,
    evaluation: pd.DataFrame,
    config: Dict[str, Any]
) -> PipelineResult:
    """
    Run the full pipeline and export predictions for the evaluation table.

    Args:
        train: Encoded training table
        evaluation: Encoded evaluation table
        config: Configuration dictionary

    Returns:
        PipelineResult
    """
    print("\n" + "=" * 70)
    print("PHASE: PREDICTION")
    print("=" * 70)

    result = run_prediction_pipeline(train, evaluation, config)

    print_evaluation_report(result.records)
    print_model_summary(result.model)
    write_reports(result.models, config, result.production_model)

    output_dir = config.get('data', {}).get('predictions_path', 'data/predictions/')
    csv_path = export_predictions(
        result.predictions, output_dir, target_column=result.models.target_column
    )

    print_prediction_results(result)
    print(f"Predictions exported to: {csv_path}")

    return result


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="pH prediction pipeline: pruning, outlier filtering, imputation and model comparison",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  phpredict --train data/raw/StudentData.csv --evaluation data/raw/StudentEvaluation.csv
  phpredict --train data/raw/StudentData.csv --phase train
  phpredict --train train.csv --evaluation eval.csv --config config/custom.yaml
        """
    )

    parser.add_argument(
        '--train', '-t',
        type=str,
        help='Path to the training table (default: data.train_path from config)'
    )

    parser.add_argument(
        '--evaluation', '-e',
        type=str,
        help='Path to the evaluation table (default: data.evaluation_path from config)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file (default: config/config.yaml)'
    )

    parser.add_argument(
        '--phase', '-p',
        type=str,
        choices=['train', 'predict'],
        default='predict',
        help='Phase to run (default: predict)'
    )

    parser.add_argument(
        '--production-model',
        type=str,
        choices=['model_1', 'model_2'],
        help='Override the production model from config'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return 1

    config = load_config(args.config)
    level = 'DEBUG' if args.verbose else config.get('logging', {}).get('level', 'INFO')
    setup_logging(level)

    if args.production_model:
        config.setdefault('pipeline', {})['production_model'] = args.production_model

    data_config = config.get('data', {})
    train_path = args.train or data_config.get('train_path')
    evaluation_path = args.evaluation or data_config.get('evaluation_path')

    if not train_path or not Path(train_path).exists():
        print(f"Error: Training data file not found: {train_path}")
        return 1
    if args.phase == 'predict' and (not evaluation_path or not Path(evaluation_path).exists()):
        print(f"Error: Evaluation data file not found: {evaluation_path}")
        return 1

    print("\n" + "=" * 70)
    print("pH PREDICTION PIPELINE")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    try:
        if args.phase == 'train':
            train, _ = load_tables(train_path, None)
            run_training_phase(train, config)
        else:
            train, evaluation = load_tables(train_path, evaluation_path)
            run_prediction_phase(train, evaluation, config)

        print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
