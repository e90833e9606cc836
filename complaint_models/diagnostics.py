"""
diagnostics.py
==============
Pre-modeling diagnostics for the complaint counts.

Answers two questions before model selection:
1. Is the response overdispersed relative to Poisson?
2. Are there more zeros than a Poisson with the same mean predicts?

Plus group comparisons (gender), correlations of continuous predictors
with log(complaints + 1), and VIF collinearity checks.

Every function returns a read-only record; the input frame is never modified.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.outliers_influence import variance_inflation_factor

from complaint_models.data_loader import (
    ALL_PREDICTORS, CATEGORICAL_PREDICTORS, CATEGORY_LEVELS, RESPONSE,
)
from complaint_models.exceptions import InvalidSpecification
from complaint_models.specification import build_design

logger = logging.getLogger(__name__)

VIF_MODERATE = 5.0
VIF_SERIOUS = 10.0


@dataclass(frozen=True)
class DispersionSummary:
    mean: float
    variance: float
    ratio: float
    variance_exceeds_mean: bool


@dataclass(frozen=True)
class DispersionTest:
    """Cameron-Trivedi test of H0: dispersion = 1 vs H1: dispersion > 1"""
    statistic: float
    p_value: float
    dispersion: float
    predictors: List[str]
    reject: bool


@dataclass(frozen=True)
class OverdispersionCheck:
    summary: DispersionSummary
    test: DispersionTest
    overdispersed: bool


@dataclass(frozen=True)
class ZeroInflationCheck:
    n_obs: int
    n_zero: int
    observed_zero_proportion: float
    expected_zero_proportion: float
    ratio: float
    p_value: float
    zero_inflated: bool


@dataclass(frozen=True)
class GroupComparison:
    group: str
    levels: List[str]
    n: List[int]
    means: List[float]
    mann_whitney_u: float
    mann_whitney_p: float
    welch_t: float
    welch_df: float
    welch_p: float
    mean_difference: float
    ci_low: float
    ci_high: float
    confidence: float = 0.95


@dataclass(frozen=True)
class Correlation:
    predictor: str
    r: float
    p_value: float


@dataclass(frozen=True)
class VIFEntry:
    predictor: str
    vif: float
    concern: str


@dataclass(frozen=True)
class CollinearityCheck:
    entries: List[VIFEntry]
    r_squared: float

    @property
    def max_vif(self) -> float:
        return max(e.vif for e in self.entries) if self.entries else float('nan')

    @property
    def flagged(self) -> List[str]:
        return [e.predictor for e in self.entries if e.concern != 'none']


@dataclass(frozen=True)
class DiagnosticReport:
    overdispersion: OverdispersionCheck
    zero_inflation: ZeroInflationCheck
    group_comparison: GroupComparison
    correlations: List[Correlation]
    collinearity: CollinearityCheck
    recommended_family: str
    alpha: float = 0.05
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        report = asdict(self)
        report['collinearity']['max_vif'] = self.collinearity.max_vif
        report['collinearity']['flagged'] = self.collinearity.flagged
        return report


def _response(df: pd.DataFrame) -> np.ndarray:
    if len(df) == 0:
        raise InvalidSpecification("Diagnostics need at least one observation")
    return df[RESPONSE].to_numpy(dtype=float)


def dispersion_summary(df: pd.DataFrame) -> DispersionSummary:
    """Sample mean and variance (ddof=1) of complaints"""
    y = _response(df)
    mean = float(y.mean())
    variance = float(y.var(ddof=1)) if len(y) > 1 else 0.0
    ratio = variance / mean if mean > 0 else float('nan')
    return DispersionSummary(mean=mean, variance=variance, ratio=ratio,
                             variance_exceeds_mean=variance > mean)


def dispersion_test(df: pd.DataFrame,
                    predictors: Sequence[str] = tuple(CATEGORICAL_PREDICTORS),
                    alpha: float = 0.05) -> DispersionTest:
    """
    Overdispersion test against a Poisson GLM

    Auxiliary regression of ((y - mu)^2 - y) / mu on an intercept; under
    Var(Y) = (1 + c) mu the intercept estimates c, so dispersion = 1 + c.
    One-sided z-test of c = 0 vs c > 0.
    """
    y = _response(df)
    if (y == 0).all():
        raise InvalidSpecification("Dispersion test undefined: response is all zero")

    usable = [p for p in predictors if df[p].nunique(dropna=True) > 1]
    if len(usable) < len(predictors):
        logger.warning(f"Dispersion test: dropped constant predictors "
                       f"{sorted(set(predictors) - set(usable))}")

    X = build_design(df, usable)
    poisson = sm.GLM(y, X, family=sm.families.Poisson()).fit()
    mu = np.asarray(poisson.fittedvalues, dtype=float)

    aux = ((y - mu) ** 2 - y) / mu
    ols = sm.OLS(aux, np.ones((len(y), 1))).fit()
    coef = float(ols.params[0])
    se = float(ols.bse[0])

    if se > 0:
        statistic = coef / se
        p_value = float(stats.norm.sf(statistic))
    else:
        statistic, p_value = float('nan'), 1.0

    return DispersionTest(statistic=float(statistic), p_value=p_value, dispersion=1.0 + coef,
                          predictors=list(usable), reject=p_value < alpha)


def check_overdispersion(df: pd.DataFrame, alpha: float = 0.05,
                         predictors: Sequence[str] = tuple(CATEGORICAL_PREDICTORS)
                         ) -> OverdispersionCheck:
    """Flag overdispersion only when variance > mean AND the dispersion test rejects"""
    summary = dispersion_summary(df)
    test = dispersion_test(df, predictors=predictors, alpha=alpha)
    return OverdispersionCheck(summary=summary, test=test,
                               overdispersed=summary.variance_exceeds_mean and test.reject)


def zero_inflation_check(df: pd.DataFrame, alpha: float = 0.05) -> ZeroInflationCheck:
    """
    Observed zero proportion vs exp(-mean) under Poisson

    Exact one-sided binomial test of the zero count; flagged when observed
    exceeds expected and the test rejects.
    """
    y = _response(df)
    n = len(y)
    n_zero = int((y == 0).sum())
    lam = float(y.mean())
    if lam == 0:
        raise InvalidSpecification("Zero-inflation check undefined: response is all zero")

    observed = n_zero / n
    expected = float(np.exp(-lam))
    p_value = float(stats.binomtest(n_zero, n, expected, alternative='greater').pvalue)

    return ZeroInflationCheck(
        n_obs=n,
        n_zero=n_zero,
        observed_zero_proportion=observed,
        expected_zero_proportion=expected,
        ratio=observed / expected if expected > 0 else float('inf'),
        p_value=p_value,
        zero_inflated=(observed > expected) and (p_value < alpha),
    )


def compare_groups(df: pd.DataFrame, group: str = 'gender',
                   confidence: float = 0.95) -> GroupComparison:
    """Mann-Whitney U and Welch t-test of complaints between the two levels of `group`"""
    if group not in CATEGORY_LEVELS:
        raise InvalidSpecification(f"'{group}' is not a categorical column")

    levels = [lvl for lvl in CATEGORY_LEVELS[group] if (df[group].astype(object) == lvl).any()]
    if len(levels) != 2:
        raise InvalidSpecification(f"Group comparison needs two populated levels of '{group}', "
                                   f"found {levels}")

    samples = [df.loc[df[group].astype(object) == lvl, RESPONSE].to_numpy(dtype=float)
               for lvl in levels]
    a, b = samples
    if len(a) < 2 or len(b) < 2:
        raise InvalidSpecification("Group comparison needs at least two observations per level")

    mw = stats.mannwhitneyu(a, b, alternative='two-sided')
    welch = stats.ttest_ind(a, b, equal_var=False)
    # Welch-Satterthwaite interval for mean(a) - mean(b)
    interval = welch.confidence_interval(confidence_level=confidence)
    diff = float(a.mean() - b.mean())

    return GroupComparison(
        group=group,
        levels=levels,
        n=[len(a), len(b)],
        means=[float(a.mean()), float(b.mean())],
        mann_whitney_u=float(mw.statistic),
        mann_whitney_p=float(mw.pvalue),
        welch_t=float(welch.statistic),
        welch_df=float(welch.df),
        welch_p=float(welch.pvalue),
        mean_difference=diff,
        ci_low=float(interval.low),
        ci_high=float(interval.high),
        confidence=confidence,
    )


def correlation_checks(df: pd.DataFrame,
                       predictors: Sequence[str] = ('visits', 'revenue', 'hours')
                       ) -> List[Correlation]:
    """Pearson r between each continuous predictor and log(complaints + 1)"""
    target = np.log1p(_response(df))
    results = []
    for name in predictors:
        x = df[name].to_numpy(dtype=float)
        if np.ptp(x) == 0:
            raise InvalidSpecification(f"Correlation undefined: '{name}' has zero variance")
        r, p = stats.pearsonr(x, target)
        results.append(Correlation(predictor=name, r=float(r), p_value=float(p)))
    return results


def _vif_concern(vif: float) -> str:
    if vif > VIF_SERIOUS:
        return 'serious'
    if vif > VIF_MODERATE:
        return 'moderate'
    return 'none'


def variance_inflation(df: pd.DataFrame,
                       predictors: Sequence[str] = tuple(ALL_PREDICTORS)) -> CollinearityCheck:
    """Auxiliary OLS of complaints on all predictors, VIF per design column"""
    y = _response(df)
    for name in predictors:
        if df[name].nunique(dropna=True) < 2:
            raise InvalidSpecification(f"VIF undefined: '{name}' has zero variance")

    X = build_design(df, predictors)
    ols = sm.OLS(y, X).fit()

    values = X.to_numpy(dtype=float)
    entries = []
    for i, column in enumerate(X.columns):
        if column == 'const':
            continue
        vif = float(variance_inflation_factor(values, i))
        entries.append(VIFEntry(predictor=column, vif=vif, concern=_vif_concern(vif)))

    return CollinearityCheck(entries=entries, r_squared=float(ols.rsquared))


def recommend_family(overdispersed: bool, zero_inflated: bool) -> str:
    if overdispersed and zero_inflated:
        return 'zinb'
    if overdispersed:
        return 'negbin'
    if zero_inflated:
        return 'zip'
    return 'poisson'


def run_diagnostics(df: pd.DataFrame, alpha: float = 0.05) -> DiagnosticReport:
    """All diagnostics in one report"""
    overdispersion = check_overdispersion(df, alpha=alpha)
    zero_inflation = zero_inflation_check(df, alpha=alpha)
    groups = compare_groups(df, 'gender')
    correlations = correlation_checks(df)
    collinearity = variance_inflation(df)

    notes = []
    if not overdispersion.summary.variance_exceeds_mean:
        notes.append("Variance does not exceed the mean; negative binomial not indicated")
    if collinearity.flagged:
        notes.append(f"VIF above {VIF_MODERATE:g} for {collinearity.flagged}")

    report = DiagnosticReport(
        overdispersion=overdispersion,
        zero_inflation=zero_inflation,
        group_comparison=groups,
        correlations=correlations,
        collinearity=collinearity,
        recommended_family=recommend_family(overdispersion.overdispersed,
                                            zero_inflation.zero_inflated),
        alpha=alpha,
        notes=notes,
    )
    log_diagnostics(report)
    return report


def log_diagnostics(report: DiagnosticReport):
    od = report.overdispersion
    zi = report.zero_inflation
    gc = report.group_comparison

    logger.info("")
    logger.info("=" * 60)
    logger.info("DIAGNOSTICS")
    logger.info("=" * 60)
    logger.info(f"Mean complaints: {od.summary.mean:.4f}")
    logger.info(f"Variance: {od.summary.variance:.4f} (ratio {od.summary.ratio:.2f})")
    logger.info(f"Dispersion test: z={od.test.statistic:.3f}, p={od.test.p_value:.4f}, "
                f"dispersion={od.test.dispersion:.3f}")
    logger.info(f"  Overdispersed: {od.overdispersed}")
    logger.info(f"Zeros: observed {zi.observed_zero_proportion:.3f} vs "
                f"Poisson expected {zi.expected_zero_proportion:.3f} (p={zi.p_value:.4g})")
    logger.info(f"  Zero-inflated: {zi.zero_inflated}")
    logger.info(f"{gc.group} ({' vs '.join(gc.levels)}): means {gc.means[0]:.3f} / {gc.means[1]:.3f}")
    logger.info(f"  Mann-Whitney U={gc.mann_whitney_u:.1f}, p={gc.mann_whitney_p:.4f}")
    logger.info(f"  Welch t={gc.welch_t:.3f}, df={gc.welch_df:.1f}, p={gc.welch_p:.4f}, "
                f"{gc.confidence:.0%} CI [{gc.ci_low:.3f}, {gc.ci_high:.3f}]")
    logger.info("Correlation with log(complaints + 1):")
    for c in report.correlations:
        logger.info(f"  {c.predictor:10s} r={c.r:+.3f} p={c.p_value:.4f}")
    logger.info(f"VIF (auxiliary OLS R^2 = {report.collinearity.r_squared:.3f}):")
    for e in report.collinearity.entries:
        flag = "" if e.concern == 'none' else f"  <- {e.concern}"
        logger.info(f"  {e.predictor:15s} {e.vif:7.2f}{flag}")
    logger.info(f"Recommended family: {report.recommended_family}")
    for note in report.notes:
        logger.info(f"  Note: {note}")
