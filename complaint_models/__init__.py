"""
Zero-inflated count models for doctor complaint data.

Typical use:
    from complaint_models import load_and_clean, run_diagnostics, fit_specification
"""

from complaint_models.base_model import FittedModel
from complaint_models.data_loader import clean_dataset, load_and_clean, load_dataset
from complaint_models.diagnostics import run_diagnostics
from complaint_models.exceptions import (
    ComplaintModelError, ConvergenceFailure, DataValidationError, InvalidSpecification,
    ModelFitError, SeparationDetected,
)
from complaint_models.fitting import MODEL_CLASSES, fit_specification
from complaint_models.model_comparison import compare_models, information_criteria, vuong_test
from complaint_models.separation import SeparationPolicy, detect_separation
from complaint_models.specification import Interaction, ModelSpecification, build_design

__version__ = '0.1.0'
