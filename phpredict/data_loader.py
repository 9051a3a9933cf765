"""
Data Loader Module
==================

Handles table ingestion, column normalization, categorical encoding and
schema validation.

Functions:
    - load_config: Load YAML configuration file
    - load_data: Load a CSV (or Excel) table
    - normalize_column_names: Lower-case, underscore-separated column names
    - encode_categoricals: Map text columns to integer codes
    - validate_table: Enforce the numeric table schema used by the core
    - validate_data: Non-fatal data quality report
    - get_data_summary: Generate basic statistics
"""

import re
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, List

import pandas as pd
import numpy as np
import yaml

from .errors import SchemaError

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def load_data(file_path: str, normalize_names: bool = True) -> pd.DataFrame:
    """
    Load a raw table from CSV (or XLSX) into a DataFrame.

    Args:
        file_path: Path to the data file
        normalize_names: Whether to normalize column names on load

    Returns:
        DataFrame containing the loaded data

    Raises:
        FileNotFoundError: If data file doesn't exist
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    if file_path.suffix.lower() in ('.xlsx', '.xls'):
        df = pd.read_excel(file_path)
    else:
        df = pd.read_csv(file_path)
    logger.info(f"Loaded data from {file_path}: {df.shape[0]} rows × {df.shape[1]} columns")

    if normalize_names:
        df = normalize_column_names(df)

    return df


def normalize_column_name(name: str) -> str:
    """Lower-case a column name and collapse non-alphanumerics to underscores."""
    normalized = re.sub(r'[^0-9a-zA-Z]+', '_', str(name)).strip('_').lower()
    return normalized


def normalize_column_names(df: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy of the table with normalized column names.

    'Brand Code' becomes 'brand_code', 'PSC Fill' becomes 'psc_fill'.

    Raises:
        SchemaError: If two columns normalize to the same name
    """
    new_names = [normalize_column_name(col) for col in df.columns]

    duplicates = sorted({name for name in new_names if new_names.count(name) > 1})
    if duplicates:
        raise SchemaError(f"Column names collide after normalization: {duplicates}")

    result = df.copy()
    result.columns = new_names
    return result


def encode_categoricals(
    train: pd.DataFrame,
    evaluation: Optional[pd.DataFrame] = None
) -> Tuple[pd.DataFrame, Optional[pd.DataFrame], Dict[str, Dict[str, int]]]:
    """
    Encode non-numeric training columns as integer codes.

    Codes follow the sorted order of the training categories so both tables
    share one mapping. Blanks and categories unseen in training become NaN.

    Args:
        train: Training table
        evaluation: Evaluation table using the same schema (optional)

    Returns:
        Tuple of (encoded_train, encoded_evaluation, mappings)
    """
    train = train.copy()
    evaluation = evaluation.copy() if evaluation is not None else None
    mappings = {}

    categorical_cols = train.select_dtypes(exclude=[np.number]).columns.tolist()

    for col in categorical_cols:
        values = train[col].dropna().map(_category_text)
        categories = sorted(v for v in values.unique() if v)
        mapping = {category: code for code, category in enumerate(categories)}
        mappings[col] = mapping

        train[col] = _apply_mapping(train[col], mapping)
        if evaluation is not None and col in evaluation.columns:
            evaluation[col] = _apply_mapping(evaluation[col], mapping)

        logger.info(f"Encoded categorical column '{col}' with {len(mapping)} categories")

    return train, evaluation, mappings


def _category_text(value) -> str:
    return str(value).strip()


def _apply_mapping(series: pd.Series, mapping: Dict[str, int]) -> pd.Series:
    text = series.map(lambda v: _category_text(v) if pd.notna(v) else None)
    return pd.to_numeric(text.map(mapping), errors='coerce').astype(float)


def validate_table(
    df: pd.DataFrame,
    target_column: Optional[str] = None,
    columns: Optional[List[str]] = None
) -> None:
    """
    Enforce the schema every core operation relies on.

    Args:
        df: Table to validate
        target_column: Column that must be present (optional)
        columns: Further columns that must be present (optional)

    Raises:
        SchemaError: On duplicate names, non-numeric columns or missing columns
    """
    duplicated = df.columns[df.columns.duplicated()].tolist()
    if duplicated:
        raise SchemaError(f"Duplicate column names: {duplicated}")

    non_numeric = df.select_dtypes(exclude=[np.number]).columns.tolist()
    if non_numeric:
        raise SchemaError(f"Non-numeric columns found: {non_numeric}")

    required = list(columns or [])
    if target_column is not None:
        required.append(target_column)
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaError(f"Columns not found in table: {missing}")


def validate_data(df: pd.DataFrame, strict: bool = False) -> Tuple[bool, Dict[str, Any]]:
    """
    Report data quality issues before modeling.

    Checks:
        - All columns are numerical
        - Missing values per column
        - Duplicate rows

    Args:
        df: DataFrame to validate
        strict: If True, raise SchemaError on any issue

    Returns:
        Tuple of (is_valid, validation_report)
    """
    report = {
        "total_rows": len(df),
        "total_columns": len(df.columns),
        "column_names": list(df.columns),
        "issues": []
    }

    non_numeric_cols = df.select_dtypes(exclude=[np.number]).columns.tolist()
    if non_numeric_cols:
        issue = f"Non-numeric columns found: {non_numeric_cols}"
        report["issues"].append(issue)
        logger.warning(issue)

    missing_counts = df.isnull().sum()
    total_missing = int(missing_counts.sum())
    if total_missing > 0:
        missing_pct = (total_missing / (df.shape[0] * df.shape[1])) * 100
        issue = f"Missing values: {total_missing} ({missing_pct:.2f}%)"
        report["issues"].append(issue)
        report["missing_by_column"] = missing_counts[missing_counts > 0].to_dict()
        logger.warning(issue)

    duplicates = int(df.duplicated().sum())
    if duplicates > 0:
        issue = f"Duplicate rows found: {duplicates}"
        report["issues"].append(issue)
        logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid

    if strict and not is_valid:
        raise SchemaError(f"Data validation failed: {report['issues']}")

    return is_valid, report


def get_data_summary(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Generate summary statistics for the dataset.

    Args:
        df: DataFrame to summarize

    Returns:
        Dictionary containing summary statistics
    """
    summary = {
        "shape": df.shape,
        "columns": list(df.columns),
        "dtypes": df.dtypes.astype(str).to_dict(),
        "statistics": {}
    }

    for col in df.select_dtypes(include=[np.number]).columns:
        summary["statistics"][col] = {
            "count": int(df[col].count()),
            "missing": int(df[col].isna().sum()),
            "mean": float(df[col].mean()),
            "std": float(df[col].std()),
            "min": float(df[col].min()),
            "25%": float(df[col].quantile(0.25)),
            "50%": float(df[col].quantile(0.50)),
            "75%": float(df[col].quantile(0.75)),
            "max": float(df[col].max())
        }

    return summary


def print_data_summary(df: pd.DataFrame, title: str = "DATASET SUMMARY") -> None:
    """
    Print a formatted summary of the dataset to console.

    Args:
        df: DataFrame to summarize
        title: Heading for the summary
    """
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    print(f"Shape: {df.shape[0]} rows × {df.shape[1]} columns")
    print("\nColumn Information:")
    print("-" * 40)

    for col in df.columns:
        dtype = df[col].dtype
        non_null = df[col].count()
        null_pct = (1 - non_null / len(df)) * 100 if len(df) else 0.0
        print(f"  {col}: {dtype} | {non_null} non-null ({null_pct:.1f}% missing)")

    print("=" * 60 + "\n")
