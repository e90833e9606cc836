"""
model_comparison.py
===================
Ranking of fitted complaint models by information criteria.

Works on any mapping of name -> fitted model, where a fitted model exposes
log_likelihood, n_params and n_obs. Entries that are None or exceptions
(failed fits) and fits with undefined or diverging coefficients are
excluded from the ranking and listed separately, so one failed candidate never aborts the
comparison of the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)


def information_criteria(log_likelihood: float, n_params: int, n_obs: int) -> Dict[str, float]:
    """AIC = 2k - 2logL, BIC = k ln(n) - 2logL"""
    if n_obs <= 0:
        raise ValueError(f"Number of observations must be positive, got {n_obs}")
    return {
        'aic': 2.0 * n_params - 2.0 * log_likelihood,
        'bic': n_params * np.log(n_obs) - 2.0 * log_likelihood,
    }


@dataclass(frozen=True)
class ComparisonReport:
    """Models ranked by ascending AIC; failed fits listed in `excluded`"""
    table: pd.DataFrame
    excluded: Dict[str, str] = field(default_factory=dict)

    @property
    def best(self) -> Any:
        if self.table.empty:
            return None
        return self.table.iloc[0]['model']

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ranking': self.table.to_dict(orient='records'),
            'best_model': self.best,
            'excluded': dict(self.excluded),
        }


def _is_failure(result: Any) -> bool:
    return result is None or isinstance(result, Exception)


def compare_models(results: Mapping[str, Any]) -> ComparisonReport:
    """
    Rank fitted models by AIC (lower is better)

    Args:
        results: name -> FittedModel, or None / exception for failed fits

    Returns:
        ComparisonReport with the ranking table and excluded candidates
    """
    rows = []
    excluded = {}

    for name, result in results.items():
        if _is_failure(result):
            excluded[name] = str(result) if result is not None else 'fit failed'
            continue
        if getattr(result, 'has_undefined_coefficients', False):
            logger.warning(f"Excluding {name} from ranking: undefined or diverging coefficients")
            excluded[name] = 'undefined or diverging coefficients'
            continue

        criteria = information_criteria(result.log_likelihood, result.n_params, result.n_obs)
        rows.append({
            'model': name,
            'family': getattr(result, 'family', None),
            'log_likelihood': float(result.log_likelihood),
            'n_params': int(result.n_params),
            'n_obs': int(result.n_obs),
            'aic': criteria['aic'],
            'bic': criteria['bic'],
        })

    n_obs = {row['n_obs'] for row in rows}
    if len(n_obs) > 1:
        logger.warning(f"Comparing models fit on different sample sizes: {sorted(n_obs)}")

    columns = ['model', 'family', 'log_likelihood', 'n_params', 'n_obs',
               'aic', 'bic', 'delta_aic', 'rank_aic', 'rank_bic']
    if not rows:
        logger.warning("No successful fits to compare")
        return ComparisonReport(table=pd.DataFrame(columns=columns), excluded=excluded)

    table = pd.DataFrame(rows).sort_values(['aic', 'model'], kind='mergesort').reset_index(drop=True)
    table['delta_aic'] = table['aic'] - table['aic'].min()
    table['rank_aic'] = np.arange(1, len(table) + 1)
    table['rank_bic'] = table['bic'].rank(method='min').astype(int)

    return ComparisonReport(table=table[columns], excluded=excluded)


@dataclass(frozen=True)
class VuongResult:
    statistic: float
    p_value: float
    preferred: str

    def to_dict(self) -> Dict[str, Any]:
        return {'statistic': self.statistic, 'p_value': self.p_value, 'preferred': self.preferred}


def vuong_test(model_a, model_b, alpha: float = 0.05) -> VuongResult:
    """
    Vuong non-nested test from per-observation log-likelihoods

    Positive statistics favour model_a. p_value is one-sided in the
    direction of the observed statistic. `preferred` is 'neither' unless
    p_value < alpha.
    """
    la = np.asarray(model_a.loglike_obs, dtype=float)
    lb = np.asarray(model_b.loglike_obs, dtype=float)
    if la.shape != lb.shape:
        raise ValueError("Vuong test needs models fit on the same observations")

    m = la - lb
    n = len(m)
    sd = m.std(ddof=1)
    if not np.isfinite(sd) or sd == 0:
        return VuongResult(statistic=0.0, p_value=1.0, preferred='neither')

    statistic = float(np.sqrt(n) * m.mean() / sd)
    p_value = float(stats.norm.sf(abs(statistic)))

    if p_value < alpha:
        preferred = model_a.name if statistic > 0 else model_b.name
    else:
        preferred = 'neither'
    return VuongResult(statistic=statistic, p_value=p_value, preferred=preferred)
