"""
base_model.py
=============
Base class for complaint count models

Handles all common functionality:
- Specification validation
- Separation policy for the zero-inflation part
- Design matrices (count / inflation)
- Optimizer loop with method fallback and convergence checks
- Coefficient tables, in-sample metrics, logging

Child classes implement:
- _build_model(y, X, Z) -> unfitted statsmodels model
- optionally _fit_once(model, method) when the fit signature differs
"""

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import expit
from sklearn.metrics import mean_absolute_error, mean_squared_error
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning, HessianInversionWarning, PerfectSeparationError, PerfectSeparationWarning,
)

from complaint_models.data_loader import RESPONSE
from complaint_models.exceptions import ConvergenceFailure, SeparationDetected
from complaint_models.model_comparison import information_criteria
from complaint_models.separation import SeparationFinding, SeparationPolicy, detect_separation
from complaint_models.specification import (
    ModelSpecification, build_design, validate_specification,
)

logger = logging.getLogger(__name__)

INFLATE_PREFIX = 'inflate_'

# Inflation coefficients are treated as diverging (separation signature) when
# the logit-scale standard error exceeds DIVERGENT_STD_ERROR, or when the
# estimate exceeds DIVERGENT_ESTIMATE in size with |z| < 1. A large but
# well-determined intercept on raw-scale inputs is not flagged.
DIVERGENT_ESTIMATE = 10.0
DIVERGENT_STD_ERROR = 100.0

SCALE_OPTIONS = ('all', 'inflation', 'none')


def count_pmf(family: str, k: np.ndarray, mu: np.ndarray, alpha: Optional[float]) -> np.ndarray:
    """Probability mass of the count distribution (Poisson or NB2)"""
    if family in ('poisson', 'zip'):
        return stats.poisson.pmf(k, mu)
    size = 1.0 / alpha
    return stats.nbinom.pmf(k, size, size / (size + mu))


def count_logpmf(family: str, k: np.ndarray, mu: np.ndarray, alpha: Optional[float]) -> np.ndarray:
    if family in ('poisson', 'zip'):
        return stats.poisson.logpmf(k, mu)
    size = 1.0 / alpha
    return stats.nbinom.logpmf(k, size, size / (size + mu))


@dataclass(frozen=True)
class FittedModel:
    """
    Immutable result of one fitting call

    Coefficient tables are indexed by term name with columns
    estimate, std_error, z_value, p_value. Inflation terms are stored
    without the 'inflate_' prefix.
    """
    spec: ModelSpecification
    family: str
    count_coefficients: pd.DataFrame
    inflation_coefficients: Optional[pd.DataFrame]
    alpha: Optional[float]
    log_likelihood: float
    n_params: int
    n_obs: int
    converged: bool
    method: str
    observed: np.ndarray = field(repr=False)
    count_mean: np.ndarray = field(repr=False)
    structural_zero_prob: np.ndarray = field(repr=False)
    iterations: Optional[int] = None
    dropped_inflation: Tuple[str, ...] = ()
    separation_findings: Tuple[SeparationFinding, ...] = ()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def theta(self) -> Optional[float]:
        """NB size parameter (1 / alpha); None for Poisson families"""
        if self.alpha is None:
            return None
        if self.alpha <= 0:
            return float('inf')
        return 1.0 / self.alpha

    @property
    def aic(self) -> float:
        return information_criteria(self.log_likelihood, self.n_params, self.n_obs)['aic']

    @property
    def bic(self) -> float:
        return information_criteria(self.log_likelihood, self.n_params, self.n_obs)['bic']

    @property
    def fitted_mean(self) -> np.ndarray:
        """E(y | x), structural zeros included"""
        return (1.0 - self.structural_zero_prob) * self.count_mean

    @property
    def zero_probability(self) -> np.ndarray:
        """P(y = 0 | x) per observation"""
        pi = self.structural_zero_prob
        return pi + (1.0 - pi) * count_pmf(self.family, 0, self.count_mean, self.alpha)

    @property
    def loglike_obs(self) -> np.ndarray:
        """Per-observation log-likelihood contributions"""
        y = self.observed
        pi = self.structural_zero_prob
        mu = self.count_mean
        with np.errstate(divide='ignore'):
            log_count = count_logpmf(self.family, y, mu, self.alpha)
            zero = np.log(pi + (1.0 - pi) * np.exp(count_logpmf(self.family, 0, mu, self.alpha)))
            positive = np.log1p(-pi) + log_count
        return np.where(y == 0, zero, positive)

    @property
    def has_undefined_coefficients(self) -> bool:
        tables = [self.count_coefficients]
        if self.inflation_coefficients is not None:
            tables.append(self.inflation_coefficients)

        for table in tables:
            values = table[['estimate', 'std_error']].to_numpy(dtype=float)
            if not np.isfinite(values).all():
                return True

        if self.alpha is not None and not np.isfinite(self.alpha):
            return True

        if self.inflation_coefficients is not None:
            infl = self.inflation_coefficients
            if (infl['std_error'] > DIVERGENT_STD_ERROR).any():
                return True
            uninformative = infl['std_error'] > infl['estimate'].abs()
            if ((infl['estimate'].abs() > DIVERGENT_ESTIMATE) & uninformative).any():
                return True
        return False

    @property
    def metrics(self) -> Dict[str, float]:
        y = self.observed
        predicted = self.fitted_mean
        return {
            'rmse': float(np.sqrt(mean_squared_error(y, predicted))),
            'mae': float(mean_absolute_error(y, predicted)),
            'observed_zeros': int((y == 0).sum()),
            'predicted_zeros': float(self.zero_probability.sum()),
        }

    def expected_frequencies(self, max_count: Optional[int] = None) -> np.ndarray:
        """Expected number of observations with count 0..max_count (rootogram input)"""
        if max_count is None:
            max_count = int(self.observed.max())
        ks = np.arange(max_count + 1)
        mu = self.count_mean[:, None]
        pi = self.structural_zero_prob[:, None]
        probs = (1.0 - pi) * count_pmf(self.family, ks[None, :], mu, self.alpha)
        probs[:, 0] += pi[:, 0]
        return probs.sum(axis=0)

    def coefficient_table(self) -> pd.DataFrame:
        """Both sub-models stacked with a 'part' column"""
        count = self.count_coefficients.assign(part='count')
        frames = [count]
        if self.inflation_coefficients is not None:
            frames.append(self.inflation_coefficients.assign(part='zero_inflation'))
        table = pd.concat(frames)
        table.index.name = 'term'
        return table.reset_index()[['part', 'term', 'estimate', 'std_error', 'z_value', 'p_value']]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'family': self.family,
            'specification': self.spec.to_dict(),
            'converged': self.converged,
            'method': self.method,
            'iterations': self.iterations,
            'log_likelihood': self.log_likelihood,
            'n_params': self.n_params,
            'n_obs': self.n_obs,
            'aic': self.aic,
            'bic': self.bic,
            'alpha': self.alpha,
            'theta': self.theta,
            'dropped_inflation': list(self.dropped_inflation),
            'separation': [f.detail for f in self.separation_findings],
            'has_undefined_coefficients': self.has_undefined_coefficients,
            'metrics': self.metrics,
            'coefficients': self.coefficient_table().to_dict(orient='records'),
        }


class BaseCountModel(ABC):
    """
    Base class for complaint count models

    One instance holds fitting configuration only; every call to fit()
    returns a new FittedModel and leaves the model object unchanged.
    """

    model_id: int = 0
    model_name: str = ''
    family: str = ''
    default_methods: Tuple[str, ...] = ('bfgs', 'lbfgs')

    def __init__(self,
                 maxiter: int = 500,
                 methods: Optional[Sequence[str]] = None,
                 separation_policy: Any = SeparationPolicy.DROP,
                 scale_continuous: str = 'all',
                 log_dir: Optional[Path] = None,
                 log_suffix: Optional[str] = None):
        """
        Initialize base model

        Args:
            maxiter: Iteration budget per optimizer method
            methods: Optimizers tried in order until one converges
            separation_policy: 'drop', 'error' or 'ignore' (inflation families only)
            scale_continuous: Standardise revenue and hours in 'all' designs, the
                'inflation' design only, or 'none'
            log_dir: Directory for a model-specific log file (None = no file)
            log_suffix: Optional suffix for the log filename
        """
        self.maxiter = maxiter
        self.methods = tuple(methods) if methods else self.default_methods
        self.separation_policy = SeparationPolicy.parse(separation_policy)
        if scale_continuous not in SCALE_OPTIONS:
            raise ValueError(f"scale_continuous must be one of {SCALE_OPTIONS}, got {scale_continuous!r}")
        self.scale_continuous = scale_continuous
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_suffix = log_suffix
        self._setup_logging()

    def _setup_logging(self):
        """Set up model-specific logging"""
        self.logger = logging.getLogger(f"MODEL_{self.model_id}")
        self.logger.setLevel(logging.INFO)

        # Drop file handlers from earlier instances of the same model
        for handler in list(self.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                self.logger.removeHandler(handler)
                handler.close()

        if self.log_dir is None:
            return

        self.log_dir.mkdir(parents=True, exist_ok=True)
        if self.log_suffix:
            log_filename = self.log_dir / f"model_{self.model_id}_log_{self.log_suffix}.txt"
        else:
            log_filename = self.log_dir / f"model_{self.model_id}_log.txt"

        fh = logging.FileHandler(log_filename, mode='w', encoding='utf-8')
        fh.setLevel(logging.INFO)
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                                      datefmt='%Y-%m-%d %H:%M:%S')
        fh.setFormatter(formatter)
        self.logger.addHandler(fh)

    def log_section(self, title: str, char: str = "-"):
        """Log section header"""
        self.logger.info("")
        self.logger.info(char * 60)
        self.logger.info(title.upper())
        self.logger.info(char * 60)

    def log_coefficients(self, table: Optional[pd.DataFrame], title: str):
        """Log a coefficient table split by significance"""
        if table is None or table.empty:
            return

        self.logger.info("")
        self.logger.info(f"{title} ({len(table)} terms)")
        self.logger.info("-" * 60)

        ordered = table.reindex(table['estimate'].abs().sort_values(ascending=False).index)
        significant = ordered[ordered['p_value'] < 0.05]
        other = ordered[~(ordered['p_value'] < 0.05)]

        if not significant.empty:
            self.logger.info(f"Significant (p < 0.05): {len(significant)} terms")
            for idx, (name, row) in enumerate(significant.iterrows(), 1):
                self._format_coefficient_line(idx, name, row)
        if not other.empty:
            self.logger.info(f"Non-significant (p >= 0.05): {len(other)} terms")
            for idx, (name, row) in enumerate(other.iterrows(), 1):
                self._format_coefficient_line(idx, name, row)

    def _format_coefficient_line(self, idx: int, name: str, row: pd.Series):
        parts = [f"  {idx:3d}. {name:25s}", f"Beta={row['estimate']:8.4f}",
                 f"SE={row['std_error']:7.4f}", f"z={row['z_value']:6.2f}"]
        if row['p_value'] < 0.0001:
            parts.append("p<0.0001")
        else:
            parts.append(f"p={row['p_value']:7.4f}")
        self.logger.info(" ".join(parts))

    # ========================================================================
    # SEPARATION & DESIGN
    # ========================================================================

    def apply_separation_policy(self, df: pd.DataFrame,
                                spec: ModelSpecification
                                ) -> Tuple[ModelSpecification, List[SeparationFinding]]:
        """Check inflation predictors and adjust the specification per policy"""
        if not spec.has_inflation:
            return spec, []

        names = list(spec.inflation)
        for interaction in spec.inflation_interactions:
            names.extend(n for n in interaction.predictors if n not in names)
        findings = detect_separation(df, names)
        if not findings:
            return spec, []

        separated = [f.predictor for f in findings]
        for finding in findings:
            self.logger.warning(f"Perfect separation in zero-inflation part of {spec.name}: "
                                f"{finding.detail}")

        if self.separation_policy is SeparationPolicy.ERROR:
            raise SeparationDetected(
                f"{spec.name}: zero-inflation predictors {separated} perfectly separate "
                f"zero from non-zero complaints",
                spec=spec, findings=findings,
            )
        if self.separation_policy is SeparationPolicy.IGNORE:
            self.logger.warning("  Separation policy 'ignore': fitting as specified")
            return spec, findings

        adjusted = spec.without_inflation(separated)
        self.logger.warning(f"  Removed {separated} from the zero-inflation part "
                            f"(kept in the count part)")
        return adjusted, findings

    def prepare_design(self, df: pd.DataFrame, spec: ModelSpecification
                       ) -> Tuple[np.ndarray, pd.DataFrame, Optional[pd.DataFrame]]:
        y = df[RESPONSE].to_numpy(dtype=float)
        X = build_design(df, spec.count, spec.count_interactions,
                         standardize=self.scale_continuous == 'all')
        Z = None
        if spec.has_inflation:
            Z = build_design(df, spec.inflation, spec.inflation_interactions,
                             standardize=self.scale_continuous in ('all', 'inflation'))
        return y, X, Z

    # ========================================================================
    # FITTING
    # ========================================================================

    @abstractmethod
    def _build_model(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame]):
        """Return an unfitted statsmodels model"""
        pass

    def _fit_once(self, model, method: str):
        return model.fit(method=method, maxiter=self.maxiter, disp=0)

    @staticmethod
    def _converged(result) -> bool:
        retvals = getattr(result, 'mle_retvals', None)
        if retvals and 'converged' in retvals:
            return bool(retvals['converged'])
        return bool(getattr(result, 'converged', False))

    @staticmethod
    def _iterations(result) -> Optional[int]:
        retvals = getattr(result, 'mle_retvals', None)
        if retvals and 'iterations' in retvals:
            return int(retvals['iterations'])
        history = getattr(result, 'fit_history', None)
        if history and 'iteration' in history:
            return int(history['iteration'])
        return None

    @staticmethod
    def _result_problem(result) -> Optional[str]:
        """Reason a converged result is still unusable, or None"""
        params = pd.Series(result.params)
        if not np.isfinite(params.to_numpy(dtype=float)).all():
            return "non-finite estimates"
        if not np.isfinite(np.asarray(result.bse, dtype=float)).all():
            return "non-finite standard errors"

        settings = getattr(result, 'mle_settings', None) or {}
        start = settings.get('start_params')
        if start is None or len(start) != len(params):
            return None
        start = np.asarray(start, dtype=float)
        values = params.to_numpy(dtype=float)
        unchanged = np.abs(values - start) <= 1e-10 * (1.0 + np.abs(start))

        names = [str(n) for n in params.index]
        inflation = np.array([n.startswith(INFLATE_PREFIX) for n in names])
        if unchanged.all():
            return "estimates still at start values"
        if inflation.any() and unchanged[inflation].all():
            return "zero-inflation estimates still at start values"
        return None

    def _fit_core(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame],
                  spec: ModelSpecification):
        """Try each optimizer in turn; first clean converged fit wins"""
        attempts = []
        last_error = None

        for method in self.methods:
            model = self._build_model(y, X, Z)
            try:
                with warnings.catch_warnings():
                    # Convergence is checked explicitly below
                    warnings.simplefilter('ignore', ConvergenceWarning)
                    warnings.simplefilter('ignore', HessianInversionWarning)
                    warnings.simplefilter('ignore', PerfectSeparationWarning)
                    warnings.simplefilter('ignore', RuntimeWarning)
                    result = self._fit_once(model, method)
            except (np.linalg.LinAlgError, PerfectSeparationError, ValueError, OverflowError) as exc:
                self.logger.warning(f"  {method}: optimizer error {type(exc).__name__}: {exc}")
                attempts.append(f"{method} (error)")
                last_error = exc
                continue

            if not np.isfinite(result.llf):
                self.logger.warning(f"  {method}: non-finite log-likelihood")
                attempts.append(f"{method} (non-finite logL)")
                continue
            if not self._converged(result):
                self.logger.warning(f"  {method}: did not converge in {self.maxiter} iterations")
                attempts.append(f"{method} (not converged)")
                continue
            problem = self._result_problem(result)
            if problem is not None:
                self.logger.warning(f"  {method}: converged but rejected, {problem}")
                attempts.append(f"{method} ({problem})")
                continue

            return result, method

        raise ConvergenceFailure(
            f"{spec.name}: no optimizer produced a usable fit within {self.maxiter} iterations "
            f"(tried {', '.join(attempts)})",
            spec=spec, methods=self.methods, iterations=self.maxiter,
        ) from last_error

    @staticmethod
    def _coefficient_frame(result, names: Sequence[str], prefix: str = '') -> pd.DataFrame:
        frame = pd.DataFrame({
            'estimate': [float(result.params[n]) for n in names],
            'std_error': [float(result.bse[n]) for n in names],
            'z_value': [float(result.tvalues[n]) for n in names],
            'p_value': [float(result.pvalues[n]) for n in names],
        }, index=[n[len(prefix):] if prefix and n.startswith(prefix) else n for n in names])
        return frame

    def fit(self, df: pd.DataFrame, spec: ModelSpecification) -> FittedModel:
        """Fit `spec` on `df` (template method)"""
        if spec.family != self.family:
            spec = replace(spec, family=self.family)

        self.log_section(f"FITTING {spec.name} ({self.model_name})")
        validate_specification(df, spec)

        effective, findings = self.apply_separation_policy(df, spec)
        dropped = tuple(p for p in spec.inflation if p not in effective.inflation)

        y, X, Z = self.prepare_design(df, effective)
        self.logger.info(f"Observations: {len(y):,}")
        self.logger.info(f"Count terms: {', '.join(X.columns)}")
        if Z is not None:
            self.logger.info(f"Zero-inflation terms: {', '.join(Z.columns)}")

        result, method = self._fit_core(y, X, Z, effective)

        count_names = list(X.columns)
        infl_names = [f"{INFLATE_PREFIX}{c}" for c in Z.columns] if Z is not None else []

        count_table = self._coefficient_frame(result, count_names)
        infl_table = self._coefficient_frame(result, infl_names, INFLATE_PREFIX) if Z is not None else None

        alpha = None
        if self.family in ('negbin', 'zinb'):
            alpha = float(result.params['alpha'])

        beta = count_table['estimate'].to_numpy()
        mu = np.exp(X.to_numpy(dtype=float) @ beta)
        if Z is not None:
            gamma = infl_table['estimate'].to_numpy()
            pi = expit(Z.to_numpy(dtype=float) @ gamma)
        else:
            pi = np.zeros(len(y))

        fitted = FittedModel(
            spec=effective,
            family=self.family,
            count_coefficients=count_table,
            inflation_coefficients=infl_table,
            alpha=alpha,
            log_likelihood=float(result.llf),
            n_params=int(len(result.params)),
            n_obs=int(len(y)),
            converged=True,
            method=method,
            observed=y.astype(np.int64),
            count_mean=mu,
            structural_zero_prob=pi,
            iterations=self._iterations(result),
            dropped_inflation=dropped,
            separation_findings=tuple(findings),
        )

        self.log_fit_summary(fitted)
        return fitted

    def log_fit_summary(self, fitted: FittedModel):
        self.logger.info(f"{self.model_name} fitted with {fitted.method}"
                         + (f" in {fitted.iterations} iterations" if fitted.iterations else ""))
        self.logger.info(f"  Log-likelihood: {fitted.log_likelihood:.4f} (k={fitted.n_params})")
        self.logger.info(f"  AIC: {fitted.aic:.2f}, BIC: {fitted.bic:.2f}")
        if fitted.alpha is not None:
            self.logger.info(f"  Dispersion: alpha={fitted.alpha:.4f}, theta={fitted.theta:.4f}")
        if fitted.dropped_inflation:
            self.logger.info(f"  Dropped from zero-inflation part: {list(fitted.dropped_inflation)}")
        if fitted.has_undefined_coefficients:
            self.logger.warning("  Some coefficients are undefined or diverging")

        self.log_coefficients(fitted.count_coefficients, "Count model coefficients")
        self.log_coefficients(fitted.inflation_coefficients, "Zero-inflation model coefficients")
