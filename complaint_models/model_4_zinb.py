"""
model_4_zinb.py
===============
Model 4: Zero-Inflated Negative Binomial (ZINB)

Two-part mixture fit jointly by maximum likelihood:
- Zero-inflation part: logit model for pi_i = P(structural zero)
- Count part: NB2 with log link, mean mu_i, dispersion alpha (theta = 1/alpha)

Per-observation likelihood:
    y_i = 0 : pi_i + (1 - pi_i) * NB(0; mu_i, theta)
    y_i > 0 : (1 - pi_i) * NB(y_i; mu_i, theta)

The two parts take separate predictor lists. Predictors that perfectly
separate zeros in the logit part are handled by the separation policy
(default: dropped from the inflation part only).
"""

from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.discrete.count_model import ZeroInflatedNegativeBinomialP

from complaint_models.base_model import BaseCountModel


class Model4ZINB(BaseCountModel):
    """
    Model 4: ZINB with logit inflation and NB2 count part

    Optimizers are tried in order (default bfgs, then lbfgs) from the
    deterministic statsmodels start values; ConvergenceFailure if none converges.
    """

    model_id = 4
    model_name = "ZINB"
    family = 'zinb'

    def _build_model(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame]):
        endog = pd.Series(y, index=X.index, name='complaints')
        return ZeroInflatedNegativeBinomialP(endog, X, exog_infl=Z, inflation='logit', p=2)
