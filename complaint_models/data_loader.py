"""
data_loader.py
==============
Loading and cleaning of the doctor complaint dataset.

Input is a tab-separated file with a header row, one row per doctor:
visits, complaints, residency, gender, revenue, hours.

Cleaning:
- Header names normalised to snake_case
- residency -> {no, yes}, gender -> {female, male} (pandas Categorical)
- Rows with missing required values dropped
- Rows with negative visits/complaints dropped (sanity filter, not an error)
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import numpy as np
import pandas as pd

from complaint_models.exceptions import DataValidationError

logger = logging.getLogger(__name__)

RESPONSE = 'complaints'

COUNT_COLUMNS = ['visits', 'complaints']
CONTINUOUS_COLUMNS = ['revenue', 'hours']

# First level is the reference category for treatment coding
CATEGORY_LEVELS: Dict[str, List[str]] = {
    'residency': ['no', 'yes'],
    'gender': ['female', 'male'],
}

LABEL_ALIASES: Dict[str, Dict[str, str]] = {
    'residency': {
        'n': 'no', 'no': 'no', '0': 'no', 'false': 'no',
        'y': 'yes', 'yes': 'yes', '1': 'yes', 'true': 'yes',
    },
    'gender': {
        'f': 'female', 'female': 'female', 'w': 'female', 'woman': 'female',
        'm': 'male', 'male': 'male', 'man': 'male',
    },
}

REQUIRED_COLUMNS = COUNT_COLUMNS + list(CATEGORY_LEVELS) + CONTINUOUS_COLUMNS

# Continuous-valued predictors (visits is a count but enters models as a number)
NUMERIC_PREDICTORS = ['visits', 'revenue', 'hours']
CATEGORICAL_PREDICTORS = list(CATEGORY_LEVELS)
ALL_PREDICTORS = ['visits', 'residency', 'gender', 'revenue', 'hours']


def _normalise_header(name: str) -> str:
    return str(name).strip().lower().replace(' ', '_').replace('-', '_')


def load_dataset(path: Union[str, Path]) -> pd.DataFrame:
    """Read the raw tab-separated file; no cleaning beyond header normalisation"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    logger.info(f"Loading data from {path}")
    df = pd.read_csv(path, sep='\t')
    df = df.rename(columns=_normalise_header)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataValidationError(
            f"Missing required columns in {path.name}: {missing}. "
            f"Found: {list(df.columns)}"
        )

    logger.info(f"Read {len(df):,} rows, {len(df.columns)} columns")
    return df


def _map_labels(series: pd.Series, column: str) -> pd.Categorical:
    """Map raw categorical labels to the fixed level set for `column`"""
    aliases = LABEL_ALIASES[column]
    present = series.notna()
    raw = series[present].astype(str).str.strip().str.lower()
    mapped = raw.map(aliases)

    unknown = sorted(set(raw[mapped.isna()]))
    if unknown:
        raise DataValidationError(
            f"Unrecognised {column} labels: {unknown}. "
            f"Expected one of {sorted(aliases)}"
        )

    # Missing labels stay missing and are dropped with the other incomplete rows
    labels = pd.Series(np.nan, index=series.index, dtype=object)
    labels[present] = mapped
    return pd.Categorical(labels, categories=CATEGORY_LEVELS[column])


def clean_dataset(df: pd.DataFrame) -> pd.DataFrame:
    """
    Return a cleaned copy of a raw dataset

    Args:
        df: Frame from load_dataset (or any frame with the required columns)

    Returns:
        New DataFrame with typed columns; the input is left untouched
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataValidationError(f"Missing required columns: {missing}")

    cleaned = df.copy()

    for column in CATEGORY_LEVELS:
        cleaned[column] = _map_labels(cleaned[column], column)

    for column in COUNT_COLUMNS + CONTINUOUS_COLUMNS:
        cleaned[column] = pd.to_numeric(cleaned[column], errors='coerce')

    n_before = len(cleaned)
    cleaned = cleaned.dropna(subset=REQUIRED_COLUMNS).copy()
    n_missing = n_before - len(cleaned)
    if n_missing:
        logger.warning(f"Dropped {n_missing} rows with missing or non-numeric required values")

    valid = (cleaned['visits'] >= 0) & (cleaned['complaints'] >= 0)
    n_negative = int((~valid).sum())
    cleaned = cleaned.loc[valid].copy()
    if n_negative:
        logger.info(f"Dropped {n_negative} rows with negative visits or complaints")

    for column in COUNT_COLUMNS:
        non_integer = cleaned[column] != np.floor(cleaned[column])
        if non_integer.any():
            raise DataValidationError(
                f"Column '{column}' holds {int(non_integer.sum())} non-integer values"
            )
        cleaned[column] = cleaned[column].astype(np.int64)

    for column in CONTINUOUS_COLUMNS:
        cleaned[column] = cleaned[column].astype(float)

    cleaned = cleaned.reset_index(drop=True)
    logger.info(f"Clean dataset: {len(cleaned):,} observations")
    return cleaned


def load_and_clean(path: Union[str, Path]) -> pd.DataFrame:
    return clean_dataset(load_dataset(path))


def summarize_dataset(df: pd.DataFrame) -> Dict[str, object]:
    """Data quality summary: size, zero mass, level counts, numeric ranges"""
    n = len(df)
    n_zero = int((df[RESPONSE] == 0).sum())

    summary = {
        'n_observations': n,
        'n_zero_complaints': n_zero,
        'pct_zero_complaints': (n_zero / n * 100) if n > 0 else 0.0,
        'levels': {},
        'ranges': {},
    }

    for column in CATEGORY_LEVELS:
        counts = df[column].value_counts(sort=False)
        summary['levels'][column] = {str(k): int(v) for k, v in counts.items()}

    for column in COUNT_COLUMNS + CONTINUOUS_COLUMNS:
        values = df[column]
        summary['ranges'][column] = {
            'min': float(values.min()) if n else float('nan'),
            'max': float(values.max()) if n else float('nan'),
            'mean': float(values.mean()) if n else float('nan'),
        }

    logger.info("")
    logger.info("-" * 60)
    logger.info("DATA SUMMARY")
    logger.info("-" * 60)
    logger.info(f"Observations: {n:,}")
    logger.info(f"Zero complaints: {n_zero:,} ({summary['pct_zero_complaints']:.1f}%)")
    for column, counts in summary['levels'].items():
        parts = ', '.join(f"{level}={count}" for level, count in counts.items())
        logger.info(f"  {column:10s}: {parts}")
    for column, stats in summary['ranges'].items():
        logger.info(f"  {column:10s}: min={stats['min']:.2f} max={stats['max']:.2f} "
                    f"mean={stats['mean']:.2f}")

    return summary
