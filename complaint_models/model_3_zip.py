"""
model_3_zip.py
==============
Model 3: Zero-Inflated Poisson

Two processes:
1. Logit: probability of a structural zero (doctor who never draws complaints)
2. Poisson: complaint count for everyone else

Useful as the equidispersed counterpart of Model 4 when judging whether
the extra NB dispersion parameter earns its keep.
"""

from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.discrete.count_model import ZeroInflatedPoisson

from complaint_models.base_model import BaseCountModel


class Model3ZIP(BaseCountModel):
    """Model 3: ZIP with logit inflation"""

    model_id = 3
    model_name = "ZIP"
    family = 'zip'

    def _build_model(self, y: np.ndarray, X: pd.DataFrame, Z: Optional[pd.DataFrame]):
        endog = pd.Series(y, index=X.index, name='complaints')
        return ZeroInflatedPoisson(endog, X, exog_infl=Z, inflation='logit')
