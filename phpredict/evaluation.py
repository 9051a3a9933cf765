"""
Model Evaluation Module
=======================

Metrics and reports for the model comparison.

Features:
    - RMSE, R², MAE on held-out data
    - Comparison table across learners and pipeline stages
    - Model comparison, feature importance and actual-vs-predicted plots
    - JSON evaluation report
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score

logger = logging.getLogger(__name__)

plt.style.use('seaborn-v0_8-whitegrid')


def calculate_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """
    Calculate regression metrics for one set of predictions.

    Args:
        y_true: Observed values
        y_pred: Predicted values

    Returns:
        Dictionary with rmse, r2, mae and n_samples
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    return {
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
        'r2': float(r2_score(y_true, y_pred)),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'n_samples': int(len(y_true))
    }


def records_to_frame(records: Sequence[Any]) -> pd.DataFrame:
    """Tabulate performance records in evaluation order."""
    rows = [record.to_dict() for record in records]
    columns = ['stage', 'model', 'rmse', 'r2', 'mae', 'cv_rmse', 'status']
    frame = pd.DataFrame(rows)
    if frame.empty:
        return pd.DataFrame(columns=columns)
    return frame[columns + [c for c in frame.columns if c not in columns]]


def best_performer(records: Sequence[Any], stage: Optional[str] = None) -> Optional[Any]:
    """
    Return the successful record with the highest R².

    Ties keep the earliest record. Only reported; production model choice
    is a configuration decision.
    """
    best = None
    for record in records:
        if record.status != 'ok' or (stage is not None and record.stage != stage):
            continue
        if best is None or record.r2 > best.r2:
            best = record
    return best


def plot_model_comparison(
    records: Sequence[Any],
    figsize: Tuple[int, int] = (14, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Bar charts of RMSE, R² and MAE per learner, grouped by stage.

    Args:
        records: Performance records
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    frame = records_to_frame(records)
    frame = frame[frame['status'] == 'ok']

    fig, axes = plt.subplots(1, 3, figsize=figsize)

    for ax, metric, title in zip(
        axes,
        ['rmse', 'r2', 'mae'],
        ['Root Mean Squared Error', 'R² Score', 'Mean Absolute Error']
    ):
        if not frame.empty:
            sns.barplot(data=frame, x='model', y=metric, hue='stage', ax=ax)
        ax.set_title(title, fontweight='bold')
        ax.set_xlabel('Learner')
        ax.set_ylabel(metric.upper() if metric != 'r2' else 'R²')
        ax.tick_params(axis='x', rotation=45)

    plt.suptitle('Model Comparison (held-out partition)', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Model comparison plot saved to {save_path}")

    return fig


def plot_feature_importance(
    report: pd.Series,
    cutoff: Optional[float] = None,
    top_n: int = 30,
    figsize: Tuple[int, int] = (10, 8),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Horizontal bar chart of scaled importance scores.

    Args:
        report: Importance scores indexed by predictor
        cutoff: Pruning cutoff to mark (optional)
        top_n: Number of predictors to show
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    shown = report.sort_values(ascending=False).head(top_n)

    fig, ax = plt.subplots(figsize=figsize)
    colors = [
        'lightgray' if cutoff is not None and score <= cutoff else 'steelblue'
        for score in shown.values
    ]
    ax.barh(shown.index[::-1], shown.values[::-1], color=colors[::-1], alpha=0.9)

    if cutoff is not None:
        ax.axvline(cutoff, color='red', linestyle='--', label=f'Cutoff: {cutoff:.2f}')
        ax.legend(loc='lower right')

    ax.set_xlabel('Importance (scaled, max = 100)')
    ax.set_title('Random Forest Feature Importance', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Feature importance plot saved to {save_path}")

    return fig


def plot_actual_vs_predicted(
    holdout: pd.DataFrame,
    models: Optional[List[str]] = None,
    figsize: Tuple[int, int] = (14, 10),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Actual vs predicted scatter plots on the held-out partition.

    Args:
        holdout: Frame with an 'actual' column and one column per learner
        models: Learners to plot (default: all prediction columns)
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    if models is None:
        models = [col for col in holdout.columns if col != 'actual']

    n_models = max(len(models), 1)
    n_rows = (n_models + 1) // 2
    fig, axes = plt.subplots(n_rows, 2, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    true_col = holdout['actual'].to_numpy()
    for ax, name in zip(axes, models):
        pred_col = holdout[name].to_numpy()

        ax.scatter(true_col, pred_col, alpha=0.5, s=20)

        min_val = min(true_col.min(), pred_col.min())
        max_val = max(true_col.max(), pred_col.max())
        ax.plot([min_val, max_val], [min_val, max_val], 'r--', linewidth=2, label='Perfect')

        metrics = calculate_metrics(true_col, pred_col)

        ax.set_xlabel('Actual')
        ax.set_ylabel('Predicted')
        ax.set_title(f"{name}\nR²={metrics['r2']:.4f}, RMSE={metrics['rmse']:.4f}",
                     fontsize=10, fontweight='bold')
        ax.legend(loc='upper left', fontsize=8)

    for idx in range(len(models), len(axes)):
        axes[idx].set_visible(False)

    plt.suptitle('Actual vs Predicted - Held-out Partition', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Actual vs Predicted plot saved to {save_path}")

    return fig


def save_evaluation_report(
    records: Sequence[Any],
    importance: Optional[pd.Series] = None,
    prune_decision: Optional[Any] = None,
    extra: Optional[Dict[str, Any]] = None,
    output_path: str = "reports/metrics/evaluation_report.json"
) -> str:
    """
    Write the model comparison to JSON.

    Args:
        records: Performance records
        importance: Importance report (optional)
        prune_decision: PruneDecision (optional)
        extra: Further top-level entries (optional)
        output_path: Destination file

    Returns:
        Path to the saved file
    """
    best = best_performer(records)
    report = {
        'records': [record.to_dict() for record in records],
        'best_by_r2': best.to_dict() if best is not None else None
    }
    if importance is not None:
        report['feature_importance'] = {k: float(v) for k, v in importance.items()}
    if prune_decision is not None:
        report['prune_decision'] = prune_decision.to_dict()
    if extra:
        report.update(extra)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(report, f, indent=2, default=_json_default)

    logger.info(f"Evaluation report saved to {output_path}")
    return str(output_path)


def _json_default(value: Any) -> Any:
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return None if np.isnan(value) else float(value)
    if isinstance(value, tuple):
        return list(value)
    return str(value)


def generate_evaluation_report(
    records: Sequence[Any],
    importance: pd.Series,
    holdout: Optional[pd.DataFrame] = None,
    prune_decision: Optional[Any] = None,
    output_dir: str = "reports/",
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Save the JSON report and all figures.

    Args:
        records: Performance records from every stage
        importance: Importance report used for pruning
        holdout: Held-out predictions of the production stage (optional)
        prune_decision: PruneDecision (optional)
        output_dir: Directory for output files
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary with the report path and figure names
    """
    output_dir = Path(output_dir)
    figures_dir = output_dir / "figures"
    metrics_dir = output_dir / "metrics"

    figures_dir.mkdir(parents=True, exist_ok=True)
    metrics_dir.mkdir(parents=True, exist_ok=True)

    report_path = save_evaluation_report(
        records, importance, prune_decision,
        output_path=str(metrics_dir / "evaluation_report.json")
    )

    figures = []

    logger.info("Generating model comparison plot...")
    plot_model_comparison(records, save_path=str(figures_dir / "model_comparison.png"))
    figures.append("model_comparison.png")

    logger.info("Generating feature importance plot...")
    cutoff = prune_decision.cutoff if prune_decision is not None else None
    plot_feature_importance(
        importance, cutoff=cutoff,
        save_path=str(figures_dir / "feature_importance.png")
    )
    figures.append("feature_importance.png")

    if holdout is not None:
        logger.info("Generating Actual vs Predicted plots...")
        plot_actual_vs_predicted(
            holdout, save_path=str(figures_dir / "actual_vs_predicted.png")
        )
        figures.append("actual_vs_predicted.png")

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    return {
        'report_path': report_path,
        'figures': figures
    }


def print_evaluation_report(records: Sequence[Any]) -> None:
    """
    Print the model comparison table to console.

    Args:
        records: Performance records
    """
    print("\n" + "=" * 78)
    print("MODEL COMPARISON REPORT")
    print("=" * 78)
    print(f"{'Stage':<18} {'Model':<20} {'RMSE':<10} {'R²':<10} {'MAE':<10} {'Status':<8}")
    print("-" * 78)

    for record in records:
        if record.status == 'ok':
            print(f"{record.stage:<18} {record.model:<20} {record.rmse:<10.5f} "
                  f"{record.r2:<10.5f} {record.mae:<10.5f} {record.status:<8}")
        else:
            print(f"{record.stage:<18} {record.model:<20} {'-':<10} {'-':<10} "
                  f"{'-':<10} {record.status:<8}")

    print("-" * 78)

    best = best_performer(records)
    if best is not None:
        print(f"\nHighest held-out R²: {best.model} ({best.stage}) = {best.r2:.5f}")

    print("=" * 78 + "\n")
