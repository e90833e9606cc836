"""
model_1_poisson.py
==================
Model 1: Poisson GLM with log link

Baseline for the comparison and the reference fit for the dispersion test.
Assumes Var(Y) = E(Y); no zero-inflation part.
"""

from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm

from complaint_models.base_model import BaseCountModel


class Model1Poisson(BaseCountModel):
    """
    Model 1: GLM with Poisson distribution and log link

    Fitted by IRLS; `methods` is ignored.
    """

    model_id = 1
    model_name = "GLM-Poisson"
    family = 'poisson'
    default_methods = ('irls',)

    def _build_model(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame]):
        endog = pd.Series(y, index=X.index, name='complaints')
        return sm.GLM(endog, X, family=sm.families.Poisson())

    def _fit_once(self, model, method: str):
        return model.fit(maxiter=self.maxiter)
