#!/usr/bin/env python3
"""
pH Prediction Pipeline - Main Entry Point
=========================================

Runs the command line interface from a source checkout.

Usage:
    python main.py --train data/raw/StudentData.csv --evaluation data/raw/StudentEvaluation.csv
    python main.py --train data/raw/StudentData.csv --phase train

Installed, the same interface is available as the ``phpredict`` command.
"""

import sys

from phpredict.cli import main


if __name__ == "__main__":
    sys.exit(main())
