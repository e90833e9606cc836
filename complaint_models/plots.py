"""
plots.py
========
Figures for the complaint report.

- Complaint histogram with the Poisson expectation overlaid
- Complaints by gender boxplot
- Hanging rootogram and residuals-vs-fitted for one fitted model
- AIC comparison across candidates

Each function writes a PNG and returns its path. Rendering only; nothing
here feeds back into the statistics.
"""

import logging
from pathlib import Path
from typing import Optional

import matplotlib

matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import stats

from complaint_models.data_loader import RESPONSE

logger = logging.getLogger(__name__)

sns.set_palette("husl")


def _save(fig, output_file: Path) -> Path:
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_file, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Plot saved to {output_file}")
    return output_file


def plot_complaint_distribution(df: pd.DataFrame, output_file: Path) -> Path:
    """Observed complaint counts against a Poisson with the same mean"""
    y = df[RESPONSE].to_numpy()
    ks = np.arange(int(y.max()) + 1)
    observed = np.bincount(y.astype(int), minlength=len(ks))
    expected = stats.poisson.pmf(ks, y.mean()) * len(y)

    fig, ax = plt.subplots(figsize=(9, 5))
    ax.bar(ks, observed, color='steelblue', alpha=0.7, label='Observed')
    ax.plot(ks, expected, 'r--o', linewidth=2, markersize=4, label='Poisson expected')
    ax.set_xlabel('Complaints')
    ax.set_ylabel('Doctors')
    ax.set_title(f'Complaint counts (mean {y.mean():.2f}, variance {y.var(ddof=1):.2f})')
    ax.legend()
    ax.grid(True, alpha=0.3)
    return _save(fig, output_file)


def plot_complaints_by_group(df: pd.DataFrame, output_file: Path, group: str = 'gender') -> Path:
    fig, ax = plt.subplots(figsize=(7, 5))
    sns.boxplot(data=df, x=group, y=RESPONSE, ax=ax)
    sns.stripplot(data=df, x=group, y=RESPONSE, ax=ax, color='black', alpha=0.4, size=3)
    ax.set_title(f'Complaints by {group}')
    ax.grid(True, alpha=0.3)
    return _save(fig, output_file)


def plot_rootogram(fitted, output_file: Path, max_count: Optional[int] = None) -> Path:
    """Hanging rootogram: sqrt(expected) curve with sqrt(observed) bars hung from it"""
    y = fitted.observed
    if max_count is None:
        max_count = int(y.max())
    ks = np.arange(max_count + 1)
    observed = np.bincount(y, minlength=max_count + 1)[:max_count + 1]
    expected = fitted.expected_frequencies(max_count)

    sqrt_exp = np.sqrt(expected)
    sqrt_obs = np.sqrt(observed)

    fig, ax = plt.subplots(figsize=(9, 5))
    ax.bar(ks, sqrt_obs, bottom=sqrt_exp - sqrt_obs, color='lightgray', edgecolor='gray',
           label='sqrt(observed)')
    ax.plot(ks, sqrt_exp, 'r-o', linewidth=2, markersize=4, label='sqrt(expected)')
    ax.axhline(0, color='black', linewidth=1)
    ax.set_xlabel('Complaints')
    ax.set_ylabel('sqrt(Frequency)')
    ax.set_title(f'Hanging rootogram: {fitted.name} ({fitted.family})')
    ax.legend()
    ax.grid(True, alpha=0.3)
    return _save(fig, output_file)


def plot_residuals(fitted, output_file: Path) -> Path:
    """Pearson residuals against fitted means"""
    y = fitted.observed.astype(float)
    mean = fitted.fitted_mean
    pi = fitted.structural_zero_prob
    mu = fitted.count_mean
    alpha = fitted.alpha or 0.0
    variance = (1 - pi) * (mu + alpha * mu ** 2) + pi * (1 - pi) * mu ** 2
    residuals = (y - mean) / np.sqrt(np.maximum(variance, 1e-12))

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.scatter(mean, residuals, alpha=0.6, s=20)
    ax.axhline(0, color='red', linestyle='--', linewidth=2)
    ax.set_xlabel('Fitted mean')
    ax.set_ylabel('Pearson residual')
    ax.set_title(f'Residuals vs fitted: {fitted.name}')
    ax.grid(True, alpha=0.3)
    return _save(fig, output_file)


def plot_model_comparison(table: pd.DataFrame, output_file: Path) -> Path:
    """AIC and BIC per model, best first"""
    fig, ax = plt.subplots(figsize=(10, max(3, 0.5 * len(table) + 1)))
    positions = np.arange(len(table))
    ax.barh(positions - 0.2, table['aic'], height=0.4, label='AIC')
    ax.barh(positions + 0.2, table['bic'], height=0.4, label='BIC')
    ax.set_yticks(positions)
    ax.set_yticklabels(table['model'])
    ax.invert_yaxis()
    ax.set_xlabel('Information criterion (lower is better)')
    ax.set_title('Model comparison')
    ax.legend()
    ax.grid(True, alpha=0.3, axis='x')
    return _save(fig, output_file)
