"""
Test Suite for Command Line Interface
======================================

Runs the packaged entry point on small CSV tables.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from phpredict.cli import main


def write_tables(directory: Path):
    """Raw-style CSVs: spaced column names, a text brand column, blank pH in evaluation."""
    rng = np.random.default_rng(5)
    n_rows = 120
    train = pd.DataFrame({
        'Brand Code': rng.choice(['A', 'B', 'C'], size=n_rows),
        'Carb Volume': rng.normal(5.4, 0.1, size=n_rows),
        'PSC Fill': rng.normal(0.2, 0.05, size=n_rows),
        'Mnf Flow': rng.normal(24, 10, size=n_rows),
        'Temperature': rng.normal(66, 1, size=n_rows),
    })
    train['PH'] = 8.5 + 0.02 * (train['Mnf Flow'] - 24) + rng.normal(scale=0.05, size=n_rows)
    train.loc[[3, 40], 'PSC Fill'] = np.nan

    evaluation = train.drop(columns=['PH']).head(10).copy()
    evaluation['PH'] = np.nan

    train_path = directory / "train.csv"
    evaluation_path = directory / "evaluation.csv"
    train.to_csv(train_path, index=False)
    evaluation.to_csv(evaluation_path, index=False)
    return train_path, evaluation_path


def write_config(directory: Path, train_path: Path, evaluation_path: Path) -> Path:
    config_path = directory / "config.yaml"
    config_path.write_text(
        "data:\n"
        f"  train_path: {train_path}\n"
        f"  evaluation_path: {evaluation_path}\n"
        "  target_column: ph\n"
        f"  predictions_path: {directory / 'predictions'}\n"
        "model:\n"
        "  learners: [random_forest, linear_regression]\n"
        "  n_estimators: 20\n"
        "output:\n"
        f"  reports_path: {directory / 'reports'}\n"
        f"  model_path: {directory / 'models' / 'production_model.joblib'}\n"
    )
    return config_path


class TestCommandLine:
    """Tests for phpredict.cli.main."""

    @pytest.fixture
    def workspace(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        train_path, evaluation_path = write_tables(tmp_path)
        config_path = write_config(tmp_path, train_path, evaluation_path)
        return tmp_path, config_path

    def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['phpredict', '--config', str(tmp_path / "missing.yaml")])

        assert main() == 1

    def test_missing_training_file(self, workspace, monkeypatch):
        directory, config_path = workspace
        monkeypatch.setattr(sys, 'argv', [
            'phpredict', '--config', str(config_path), '--train', str(directory / "absent.csv")
        ])

        assert main() == 1

    def test_train_phase(self, workspace, monkeypatch):
        directory, config_path = workspace
        monkeypatch.setattr(sys, 'argv', ['phpredict', '--config', str(config_path), '--phase', 'train'])

        assert main() == 0
        assert (directory / "models" / "production_model.joblib").exists()
        assert (directory / "reports" / "metrics" / "evaluation_report.json").exists()

    def test_predict_phase(self, workspace, monkeypatch):
        directory, config_path = workspace
        monkeypatch.setattr(sys, 'argv', ['phpredict', '--config', str(config_path)])

        assert main() == 0
        predictions = pd.read_csv(directory / "predictions" / "predictions.csv", index_col='row')
        assert len(predictions) == 10
        assert predictions['ph'].notna().all()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
