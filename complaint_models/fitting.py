"""
fitting.py
==========
Model class registry and a single entry point that fits a specification
with the class matching its family.
"""

from typing import Any, Dict, Type

import pandas as pd

from complaint_models.base_model import BaseCountModel, FittedModel
from complaint_models.exceptions import InvalidSpecification
from complaint_models.model_1_poisson import Model1Poisson
from complaint_models.model_2_negbin import Model2NegativeBinomial
from complaint_models.model_3_zip import Model3ZIP
from complaint_models.model_4_zinb import Model4ZINB
from complaint_models.specification import ModelSpecification

# Model class registry
MODEL_CLASSES: Dict[str, Type[BaseCountModel]] = {
    'poisson': Model1Poisson,
    'negbin': Model2NegativeBinomial,
    'zip': Model3ZIP,
    'zinb': Model4ZINB,
}


def model_for(spec: ModelSpecification, **options: Any) -> BaseCountModel:
    try:
        model_class = MODEL_CLASSES[spec.family]
    except KeyError:
        raise InvalidSpecification(
            f"Unknown family '{spec.family}' in {spec.name}; expected one of {sorted(MODEL_CLASSES)}",
            spec=spec,
        ) from None
    return model_class(**options)


def fit_specification(df: pd.DataFrame, spec: ModelSpecification, **options: Any) -> FittedModel:
    """
    Fit one specification

    Args:
        df: Cleaned dataset
        spec: Specification; its family selects the model class
        **options: Passed to the model class (maxiter, methods, separation_policy,
            scale_continuous, log_dir)
    """
    return model_for(spec, **options).fit(df, spec)
