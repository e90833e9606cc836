"""Tests for the fitting engine (Poisson, NB2, ZIP, ZINB)"""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from complaint_models.ModelPipeline import DEFAULT_CANDIDATES
from complaint_models.base_model import BaseCountModel, FittedModel
from complaint_models.exceptions import ConvergenceFailure, InvalidSpecification
from complaint_models.fitting import MODEL_CLASSES, fit_specification, model_for
from complaint_models.model_1_poisson import Model1Poisson
from complaint_models.model_2_negbin import Model2NegativeBinomial
from complaint_models.model_4_zinb import Model4ZINB
from complaint_models.specification import ModelSpecification

ZINB_SPEC = ModelSpecification(
    name='zinb_visits_gender',
    family='zinb',
    count=('visits', 'gender'),
    inflation=('gender',),
)


@pytest.fixture(scope="module")
def zinb_fit(zinb_data):
    return fit_specification(zinb_data, ZINB_SPEC)


def test_registry_covers_all_families():
    assert set(MODEL_CLASSES) == {'poisson', 'negbin', 'zip', 'zinb'}
    assert isinstance(model_for(ZINB_SPEC), Model4ZINB)


def test_unknown_family_rejected(zinb_data):
    spec = ModelSpecification('hurdle', 'hurdle', ('visits',))
    with pytest.raises(InvalidSpecification):
        fit_specification(zinb_data, spec)


def test_end_to_end_fifty_doctors(doctors_50):
    """ZINB on 50 doctors: count {visits, gender}, inflation {gender}"""
    assert (doctors_50['complaints'] == 0).mean() >= 0.5
    assert doctors_50['visits'].min() == 0
    assert doctors_50['visits'].max() == 20

    fitted = fit_specification(doctors_50, ZINB_SPEC)

    assert fitted.converged
    assert fitted.theta is not None
    assert np.isfinite(fitted.theta)
    assert fitted.theta > 0
    assert fitted.n_obs == 50
    # const, visits, gender_male | inflate const, gender_male | alpha
    assert fitted.n_params == 6


def test_zinb_result_structure(zinb_fit, zinb_data):
    assert isinstance(zinb_fit, FittedModel)
    assert zinb_fit.family == 'zinb'
    assert list(zinb_fit.count_coefficients.index) == ['const', 'visits', 'gender_male']
    assert list(zinb_fit.inflation_coefficients.index) == ['const', 'gender_male']
    assert zinb_fit.alpha > 0
    assert zinb_fit.theta == pytest.approx(1.0 / zinb_fit.alpha)
    assert zinb_fit.method in ('bfgs', 'lbfgs')
    assert len(zinb_fit.fitted_mean) == len(zinb_data)
    assert ((zinb_fit.structural_zero_prob > 0) & (zinb_fit.structural_zero_prob < 1)).all()


def test_zinb_recovers_visit_effect(zinb_fit):
    # True count coefficient on visits is 0.08
    assert zinb_fit.count_coefficients.loc['visits', 'estimate'] == pytest.approx(0.08, abs=0.05)


def test_loglike_obs_sums_to_llf(zinb_fit):
    assert zinb_fit.loglike_obs.sum() == pytest.approx(zinb_fit.log_likelihood, rel=1e-6)


def test_expected_frequencies(zinb_fit):
    expected = zinb_fit.expected_frequencies(max_count=60)
    assert len(expected) == 61
    # Almost all probability mass sits at or below 60 complaints
    assert expected.sum() == pytest.approx(zinb_fit.n_obs, rel=1e-3)
    assert expected[0] == pytest.approx(zinb_fit.zero_probability.sum())


def test_fitting_is_idempotent(zinb_data):
    first = fit_specification(zinb_data, ZINB_SPEC)
    second = fit_specification(zinb_data, ZINB_SPEC)

    np.testing.assert_allclose(first.count_coefficients['estimate'],
                               second.count_coefficients['estimate'], rtol=1e-8)
    np.testing.assert_allclose(first.inflation_coefficients['estimate'],
                               second.inflation_coefficients['estimate'], rtol=1e-8)
    assert first.alpha == pytest.approx(second.alpha, rel=1e-8)
    assert first.log_likelihood == pytest.approx(second.log_likelihood, rel=1e-10)


def test_fit_does_not_modify_data(zinb_data):
    before = zinb_data.copy()
    fit_specification(zinb_data, ZINB_SPEC)
    assert zinb_data.equals(before)


def test_convergence_failure_on_tiny_budget(zinb_data):
    with pytest.raises(ConvergenceFailure) as excinfo:
        fit_specification(zinb_data, ZINB_SPEC, maxiter=1)

    assert excinfo.value.iterations == 1
    assert excinfo.value.methods == ['bfgs', 'lbfgs']
    assert excinfo.value.spec_name == 'zinb_visits_gender'


def test_poisson_glm(poisson_data):
    spec = ModelSpecification('poisson_visits', 'poisson', ('visits', 'gender'))
    fitted = Model1Poisson().fit(poisson_data, spec)

    assert fitted.alpha is None
    assert fitted.theta is None
    assert fitted.inflation_coefficients is None
    assert fitted.n_params == 3
    # Intercept-only truth: log(2)
    assert fitted.count_coefficients.loc['const', 'estimate'] == pytest.approx(np.log(2.0), abs=0.25)
    assert fitted.loglike_obs.sum() == pytest.approx(fitted.log_likelihood, rel=1e-6)


def test_negative_binomial_estimates_dispersion(negbin_data):
    spec = ModelSpecification('nb_intercept', 'negbin', ())
    fitted = Model2NegativeBinomial().fit(negbin_data, spec)

    assert fitted.n_params == 2
    assert fitted.alpha == pytest.approx(1.0, abs=0.4)
    assert np.exp(fitted.count_coefficients.loc['const', 'estimate']) == pytest.approx(2.0, abs=0.4)


def test_zip_fit(zero_inflated_data):
    spec = ModelSpecification('zip_intercepts', 'zip', ('visits',), ())
    fitted = fit_specification(zero_inflated_data, spec)

    assert fitted.alpha is None
    assert fitted.structural_zero_prob.mean() == pytest.approx(0.5, abs=0.1)
    assert fitted.n_params == 3


def test_model_class_overrides_family(negbin_data):
    """A model class fits its own family whatever the specification says"""
    spec = ModelSpecification('poisson_as_nb', 'poisson', ('visits',))
    fitted = Model2NegativeBinomial().fit(negbin_data, spec)
    assert fitted.family == 'negbin'
    assert fitted.spec.family == 'negbin'


def test_metrics_and_tables(zinb_fit):
    metrics = zinb_fit.metrics
    assert metrics['rmse'] >= metrics['mae'] >= 0
    assert metrics['observed_zeros'] == int((zinb_fit.observed == 0).sum())

    table = zinb_fit.coefficient_table()
    assert list(table.columns) == ['part', 'term', 'estimate', 'std_error', 'z_value', 'p_value']
    assert set(table['part']) == {'count', 'zero_inflation'}
    assert len(table) == 5

    summary = zinb_fit.to_dict()
    assert summary['name'] == 'zinb_visits_gender'
    assert summary['aic'] == pytest.approx(2 * 6 - 2 * zinb_fit.log_likelihood)


def _stub_result(params, bse, start):
    return SimpleNamespace(
        params=pd.Series(params),
        bse=pd.Series(bse, index=list(params)),
        llf=-400.0,
        mle_retvals={'converged': True, 'iterations': 3},
        mle_settings={'start_params': np.asarray(start, dtype=float)},
    )


class _StubZINB(Model4ZINB):
    """ZINB whose optimizer returns canned results, one per method"""

    def __init__(self, results, **options):
        super().__init__(**options)
        self._results = dict(results)

    def _fit_once(self, model, method):
        result = self._results[method]
        return result if result is not None else super()._fit_once(model, method)


_STUB_PARAMS = {'inflate_const': 0.4, 'inflate_gender_male': -0.2,
                'const': -0.3, 'visits': 0.08, 'gender_male': 0.4, 'alpha': 0.5}


def test_converged_result_with_nan_standard_error_rejected(zinb_data):
    bse = [0.3, float('nan'), 0.1, 0.01, 0.1, 0.2]
    stub = _stub_result(_STUB_PARAMS, bse, np.zeros(6))
    model = _StubZINB({'bfgs': stub, 'lbfgs': stub})

    with pytest.raises(ConvergenceFailure, match="non-finite standard errors"):
        model.fit(zinb_data, ZINB_SPEC)


def test_converged_result_at_start_values_rejected(zinb_data):
    params = dict(_STUB_PARAMS, inflate_const=0.1, inflate_gender_male=0.1)
    start = [0.1, 0.1, -0.2, 0.05, 0.3, 1.0]
    stub = _stub_result(params, [4e7, 6e3, 0.1, 0.01, 0.1, 0.2], start)
    model = _StubZINB({'bfgs': stub, 'lbfgs': stub})

    with pytest.raises(ConvergenceFailure, match="zero-inflation estimates still at start values"):
        model.fit(zinb_data, ZINB_SPEC)


def test_rejected_result_falls_through_to_next_optimizer(zinb_data):
    stub = _stub_result(_STUB_PARAMS, [0.3, float('nan'), 0.1, 0.01, 0.1, 0.2], np.zeros(6))
    fitted = _StubZINB({'bfgs': stub, 'lbfgs': None}).fit(zinb_data, ZINB_SPEC)

    assert fitted.method == 'lbfgs'
    assert np.isfinite(fitted.inflation_coefficients['std_error']).all()


def test_clean_result_accepted():
    stub = _stub_result(_STUB_PARAMS, [0.3, 0.2, 0.1, 0.01, 0.1, 0.2], np.zeros(6))
    assert BaseCountModel._result_problem(stub) is None


def test_fit_with_continuous_inflation_predictor(zinb_data):
    spec = ModelSpecification('zinb_hours_inflation', 'zinb', ('visits', 'gender'), ('hours',))
    fitted = fit_specification(zinb_data, spec)

    assert list(fitted.inflation_coefficients.index) == ['const', 'hours_std']
    assert np.isfinite(fitted.inflation_coefficients['std_error']).all()


@pytest.mark.parametrize("name", [c['name'] for c in DEFAULT_CANDIDATES if c['family'] == 'zinb'])
def test_default_zinb_candidates_fit_cleanly(zinb_data, name):
    config = next(c for c in DEFAULT_CANDIDATES if c['name'] == name)
    fitted = fit_specification(zinb_data, ModelSpecification.from_dict(config))

    assert fitted.converged
    for table in (fitted.count_coefficients, fitted.inflation_coefficients):
        assert np.isfinite(table[['estimate', 'std_error']].to_numpy()).all()
    assert not fitted.has_undefined_coefficients
    terms = set(fitted.count_coefficients.index) | set(fitted.inflation_coefficients.index)
    assert not terms & {'revenue', 'hours'}


@pytest.mark.parametrize("name", [c['name'] for c in DEFAULT_CANDIDATES])
def test_default_candidates_fit_or_fail_loudly(zinb_data, name):
    config = next(c for c in DEFAULT_CANDIDATES if c['name'] == name)
    try:
        fitted = fit_specification(zinb_data, ModelSpecification.from_dict(config))
    except ConvergenceFailure:
        return
    assert np.isfinite(fitted.count_coefficients['std_error']).all()
    if fitted.inflation_coefficients is not None:
        assert np.isfinite(fitted.inflation_coefficients['std_error']).all()


def test_scaling_can_be_disabled(zinb_data):
    spec = ModelSpecification('negbin_hours', 'negbin', ('visits', 'hours'))
    raw = fit_specification(zinb_data, spec, scale_continuous='none')
    scaled = fit_specification(zinb_data, spec)

    assert list(raw.count_coefficients.index) == ['const', 'visits', 'hours']
    assert list(scaled.count_coefficients.index) == ['const', 'visits', 'hours_std']
    assert raw.log_likelihood == pytest.approx(scaled.log_likelihood, rel=1e-3)


def test_inflation_only_scaling(zinb_data):
    spec = ModelSpecification('zinb_hours', 'zinb', ('visits', 'hours'), ('hours',))
    fitted = fit_specification(zinb_data, spec, scale_continuous='inflation')

    assert 'hours' in fitted.count_coefficients.index
    assert 'hours_std' in fitted.inflation_coefficients.index


def test_unknown_scaling_option_rejected():
    with pytest.raises(ValueError, match="scale_continuous"):
        Model4ZINB(scale_continuous='some')


def test_self_interaction_rejected_before_fitting(zinb_data):
    spec = ModelSpecification('zinb_gender_sq', 'zinb', ('visits', 'gender'), ('gender',),
                              count_interactions=(('gender', 'gender'),))
    with pytest.raises(InvalidSpecification, match="itself"):
        fit_specification(zinb_data, spec)


def _undefined(estimate, std_error):
    table = pd.DataFrame({'estimate': [estimate], 'std_error': [std_error],
                          'z_value': [estimate / std_error], 'p_value': [0.5]},
                         index=['const'])
    return FittedModel(
        spec=ZINB_SPEC, family='zinb',
        count_coefficients=table.assign(estimate=0.1, std_error=0.05),
        inflation_coefficients=table,
        alpha=0.5, log_likelihood=-100.0, n_params=3, n_obs=10, converged=True,
        method='bfgs', observed=np.zeros(10, dtype=np.int64),
        count_mean=np.ones(10), structural_zero_prob=np.full(10, 0.2),
    ).has_undefined_coefficients


def test_well_determined_large_inflation_intercept_not_flagged():
    assert not _undefined(-12.0, 1.0)


@pytest.mark.parametrize("estimate, std_error", [(15.0, 50.0), (0.3, 250.0), (1.0, float('nan'))])
def test_diverging_inflation_coefficient_flagged(estimate, std_error):
    assert _undefined(estimate, std_error)
