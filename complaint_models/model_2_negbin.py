"""
model_2_negbin.py
=================
Model 2: Negative binomial (NB2) regression

Key characteristics:
- Quadratic variance function Var(Y) = mu + alpha * mu^2
- alpha estimated jointly with the coefficients by maximum likelihood
- No zero-inflation part; all zeros come from the count distribution
"""

from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm

from complaint_models.base_model import BaseCountModel


class Model2NegativeBinomial(BaseCountModel):
    """Model 2: NB2 count regression with log link"""

    model_id = 2
    model_name = "NegBin-NB2"
    family = 'negbin'

    def _build_model(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame]):
        endog = pd.Series(y, index=X.index, name='complaints')
        return sm.NegativeBinomial(endog, X, loglike_method='nb2')
