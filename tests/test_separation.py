"""Tests for perfect-separation detection and the separation policies"""

import numpy as np
import pandas as pd
import pytest

from complaint_models.exceptions import ConvergenceFailure, SeparationDetected
from complaint_models.fitting import fit_specification
from complaint_models.separation import SeparationPolicy, detect_separation
from complaint_models.specification import ModelSpecification

SEPARATED_SPEC = ModelSpecification(
    name='zinb_gender_inflation',
    family='zinb',
    count=('visits',),
    inflation=('gender',),
)


def test_detects_categorical_separation(separated_data):
    findings = detect_separation(separated_data, ['gender', 'hours', 'residency'])

    assert [f.predictor for f in findings] == ['gender']
    assert findings[0].kind == 'categorical'
    assert 'female' in findings[0].detail


def test_no_separation_in_mixed_data(zinb_data):
    assert detect_separation(zinb_data, ['visits', 'gender', 'residency', 'revenue', 'hours']) == []


def test_detects_continuous_separation():
    df = pd.DataFrame({
        'complaints': [0, 0, 0, 1, 2, 4],
        'hours': [400.0, 450.0, 480.0, 900.0, 1000.0, 1200.0],
        'visits': [5, 1, 9, 2, 8, 3],
    })
    findings = detect_separation(df, ['hours', 'visits'])

    assert [f.predictor for f in findings] == ['hours']
    assert findings[0].kind == 'continuous'


def test_overlap_is_not_separation():
    df = pd.DataFrame({
        'complaints': [0, 3, 0, 1],
        'hours': [400.0, 450.0, 900.0, 1000.0],
    })
    assert detect_separation(df, ['hours']) == []


def test_policy_parse():
    assert SeparationPolicy.parse('DROP') is SeparationPolicy.DROP
    assert SeparationPolicy.parse(SeparationPolicy.IGNORE) is SeparationPolicy.IGNORE
    with pytest.raises(ValueError):
        SeparationPolicy.parse('shrug')


def test_drop_policy_excludes_predictor_and_converges(separated_data):
    fitted = fit_specification(separated_data, SEPARATED_SPEC, separation_policy='drop')

    assert fitted.converged
    assert fitted.dropped_inflation == ('gender',)
    assert 'gender' not in fitted.spec.inflation
    assert list(fitted.inflation_coefficients.index) == ['const']
    assert not fitted.has_undefined_coefficients
    assert np.isfinite(fitted.log_likelihood)
    assert [f.predictor for f in fitted.separation_findings] == ['gender']


def test_error_policy_raises(separated_data):
    with pytest.raises(SeparationDetected) as excinfo:
        fit_specification(separated_data, SEPARATED_SPEC, separation_policy='error')

    assert excinfo.value.spec_name == 'zinb_gender_inflation'
    assert [f.predictor for f in excinfo.value.findings] == ['gender']


def test_ignore_policy_fails_or_diverges(separated_data):
    """Keeping the separated predictor must not yield a clean, well-defined fit"""
    try:
        fitted = fit_specification(separated_data, SEPARATED_SPEC, separation_policy='ignore')
    except ConvergenceFailure:
        return

    assert 'gender' in fitted.spec.inflation
    assert fitted.has_undefined_coefficients


def test_separation_check_skipped_for_families_without_inflation(separated_data):
    spec = ModelSpecification('nb_visits', 'negbin', count=('visits',))
    fitted = fit_specification(separated_data, spec, separation_policy='error')
    assert fitted.separation_findings == ()
