"""
pH Prediction Pipeline
======================

Data conditioning and cross-validated model selection for predicting a
numeric target (pH) from a flat table of process measurements.

Modules:
    - data_loader: Table ingestion, column normalization, schema validation
    - preprocessing: Feature pruning, outlier filtering, regression imputation
    - model: Cross-validated multi-learner training harness
    - evaluation: Metrics, comparison reports and plots
    - prediction: End-to-end prediction pipeline and export
"""

from .errors import (
    PipelineError,
    SchemaError,
    InsufficientDataError,
    DegenerateFitError,
    ConfigurationError,
)
from .preprocessing import rank_importance, prune, filter_outliers, impute
from .model import train_and_evaluate, predict

__version__ = "1.0.0"
__author__ = "Predictive Analytics Team"
