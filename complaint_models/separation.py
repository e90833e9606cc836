"""
separation.py
=============
Perfect-separation checks for the zero-inflation (logit) sub-model.

The logit part models P(structural zero). When a predictor splits the
complaints == 0 indicator without overlap the maximum-likelihood estimate
does not exist and the coefficients run off to +-infinity.

Checks:
- Categorical: some level shows no variation in the zero indicator
- Continuous: a threshold puts every zero on one side and every non-zero on the other
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

import numpy as np
import pandas as pd

from complaint_models.data_loader import CATEGORY_LEVELS, RESPONSE

logger = logging.getLogger(__name__)


class SeparationPolicy(str, Enum):
    """What the fitting engine does with separated inflation predictors"""
    DROP = 'drop'       # remove from the inflation part, keep in the count part
    ERROR = 'error'     # raise SeparationDetected
    IGNORE = 'ignore'   # fit as specified

    @classmethod
    def parse(cls, value) -> 'SeparationPolicy':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown separation policy {value!r}; expected one of {[p.value for p in cls]}"
            ) from None


@dataclass(frozen=True)
class SeparationFinding:
    predictor: str
    kind: str  # 'categorical' or 'continuous'
    detail: str


def _categorical_finding(df: pd.DataFrame, name: str, is_zero: pd.Series):
    for level in CATEGORY_LEVELS[name]:
        in_level = (df[name].astype(object) == level)
        n_level = int(in_level.sum())
        if n_level == 0:
            continue
        zeros = int(is_zero[in_level].sum())
        if zeros == 0 or zeros == n_level:
            outcome = 'zero' if zeros == n_level else 'non-zero'
            return SeparationFinding(
                predictor=name,
                kind='categorical',
                detail=f"all {n_level} observations with {name}={level} have {outcome} complaints",
            )
    return None


def _continuous_finding(df: pd.DataFrame, name: str, is_zero: pd.Series):
    values = df[name].to_numpy(dtype=float)
    zero_mask = is_zero.to_numpy()
    if zero_mask.all() or not zero_mask.any():
        return None

    zero_values = values[zero_mask]
    nonzero_values = values[~zero_mask]

    if zero_values.max() < nonzero_values.min():
        return SeparationFinding(
            predictor=name,
            kind='continuous',
            detail=f"every zero has {name} < {nonzero_values.min():g} <= every non-zero",
        )
    if nonzero_values.max() < zero_values.min():
        return SeparationFinding(
            predictor=name,
            kind='continuous',
            detail=f"every non-zero has {name} < {zero_values.min():g} <= every zero",
        )
    return None


def detect_separation(df: pd.DataFrame, predictors: Sequence[str]) -> List[SeparationFinding]:
    """
    Find predictors that perfectly separate zero from non-zero complaints

    Args:
        df: Cleaned dataset
        predictors: Candidate zero-inflation predictors

    Returns:
        One finding per separated predictor (empty list when none)
    """
    is_zero = (df[RESPONSE] == 0)
    findings = []

    for name in predictors:
        if name in CATEGORY_LEVELS:
            finding = _categorical_finding(df, name, is_zero)
        else:
            finding = _continuous_finding(df, name, is_zero)

        if finding is not None:
            logger.debug(f"Separation: {finding.predictor} ({finding.kind}) - {finding.detail}")
            findings.append(finding)

    return findings
