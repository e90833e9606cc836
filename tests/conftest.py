"""Shared synthetic datasets for the complaint model tests"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from complaint_models.data_loader import clean_dataset


def _covariates(rng, n):
    return pd.DataFrame({
        'visits': rng.integers(0, 21, size=n),
        'residency': rng.choice(['N', 'Y'], size=n),
        'gender': rng.choice(['F', 'M'], size=n),
        'revenue': rng.normal(250.0, 25.0, size=n).round(2),
        'hours': rng.normal(1000.0, 300.0, size=n).round(1),
    })


def _dataset(raw, complaints):
    raw = raw.copy()
    raw.insert(1, 'complaints', np.asarray(complaints, dtype=int))
    return clean_dataset(raw)


def _negbin(rng, size, mu, n=None):
    """NB2 draws with mean mu; n is required when mu is a scalar"""
    return rng.negative_binomial(size, size / (size + mu), size=n)


@pytest.fixture
def raw_frame():
    """Small raw frame with the labels used in the source files"""
    return pd.DataFrame({
        'visits': [10, 3, 0, 7, 12, 5],
        'complaints': [2, 0, 0, 1, -1, 0],
        'residency': ['Y', 'N', 'N', 'Y', 'N', 'Y'],
        'gender': ['F', 'M', 'M', 'F', 'M', 'F'],
        'revenue': [263.03, 334.94, 206.42, 226.32, 288.91, 275.94],
        'hours': [1287.25, 1588.00, 705.25, 1005.50, 1667.25, 1517.75],
    })


@pytest.fixture(scope="session")
def poisson_data():
    """Equidispersed counts, no structural zeros"""
    rng = np.random.default_rng(11)
    raw = _covariates(rng, 400)
    return _dataset(raw, rng.poisson(2.0, size=400))


@pytest.fixture(scope="session")
def negbin_data():
    """NB2 counts with mean 2 and alpha 1 (variance 6)"""
    rng = np.random.default_rng(12)
    raw = _covariates(rng, 400)
    return _dataset(raw, _negbin(rng, 1.0, 2.0, 400))


@pytest.fixture(scope="session")
def zero_inflated_data():
    """Poisson(3) counts with half the rows forced to structural zeros"""
    rng = np.random.default_rng(13)
    raw = _covariates(rng, 400)
    structural = rng.random(400) < 0.5
    return _dataset(raw, np.where(structural, 0, rng.poisson(3.0, size=400)))


@pytest.fixture(scope="session")
def zinb_data():
    """ZINB with visits and gender in the count part, gender in the inflation part"""
    rng = np.random.default_rng(14)
    n = 300
    raw = _covariates(rng, n)
    male = (raw['gender'] == 'M').to_numpy(dtype=float)
    mu = np.exp(-0.3 + 0.08 * raw['visits'].to_numpy() + 0.4 * male)
    pi = expit(-0.5 + 0.8 * male)
    counts = _negbin(rng, 2.0, mu)
    return _dataset(raw, np.where(rng.random(n) < pi, 0, counts))


@pytest.fixture(scope="session")
def doctors_50():
    """
    50 doctors, visits covering 0..20, at least half the complaints zero

    25 randomly chosen rows are structural zeros; the rest are NB counts
    that may add further zeros.
    """
    rng = np.random.default_rng(2024)
    n = 50
    visits = np.arange(n) % 21
    raw = pd.DataFrame({
        'visits': visits,
        'residency': rng.choice(['N', 'Y'], size=n),
        'gender': np.where(np.arange(n) % 2 == 0, 'F', 'M'),
        'revenue': rng.normal(250.0, 25.0, size=n).round(2),
        'hours': rng.normal(1000.0, 300.0, size=n).round(1),
    })
    counts = _negbin(rng, 1.0, np.exp(0.3 + 0.1 * visits))
    counts[rng.permutation(n)[:25]] = 0
    return _dataset(raw, counts)


@pytest.fixture(scope="session")
def separated_data():
    """Every female has zero complaints, every male at least one"""
    rng = np.random.default_rng(15)
    n = 200
    raw = _covariates(rng, n)
    male = (raw['gender'] == 'M').to_numpy()
    positive = 1 + _negbin(rng, 0.8, np.exp(0.5 + 0.08 * raw['visits'].to_numpy()))
    return _dataset(raw, np.where(male, positive, 0))
