"""
ModelPipeline.py
================
Master execution framework for the complaint analysis.

Load -> clean -> diagnose -> fit every candidate specification -> compare.

Design Principles:
- Configuration dictionary approach (JSON file or DEFAULT_CONFIG)
- Continues execution if individual models fail
- Single place to modify candidate specifications

Usage:
    complaint-models --data data/compdat.txt
    complaint-models --config config/pipeline.json --output-dir output
"""

import argparse
import json
import logging
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from complaint_models.base_model import SCALE_OPTIONS, FittedModel
from complaint_models.data_loader import load_and_clean, summarize_dataset
from complaint_models.diagnostics import DiagnosticReport, run_diagnostics
from complaint_models.exceptions import ModelFitError
from complaint_models.fitting import fit_specification
from complaint_models.model_comparison import ComparisonReport, compare_models, vuong_test
from complaint_models.separation import SeparationPolicy
from complaint_models.specification import ModelSpecification

# ============================================================================
# CANDIDATE SPECIFICATIONS
# ============================================================================

ALL = ['visits', 'residency', 'gender', 'revenue', 'hours']

DEFAULT_CANDIDATES: List[Dict[str, Any]] = [
    {
        'name': 'poisson_full',
        'family': 'poisson',
        'count': ALL,
        'description': 'Poisson baseline, all predictors',
    },
    {
        'name': 'negbin_full',
        'family': 'negbin',
        'count': ALL,
        'description': 'NB2 baseline, all predictors',
    },
    {
        'name': 'zip_full',
        'family': 'zip',
        'count': ALL,
        'inflation': ['residency', 'gender', 'revenue', 'hours'],
        'description': 'Zero-inflated Poisson',
    },
    {
        'name': 'zinb_full',
        'family': 'zinb',
        'count': ALL,
        'inflation': ALL,
        'description': 'ZINB, all predictors in both parts (separated ones dropped by policy)',
    },
    {
        'name': 'zinb_reduced',
        'family': 'zinb',
        'count': ['visits', 'residency', 'gender'],
        'inflation': ['gender'],
        'description': 'ZINB with the significant count predictors only',
    },
    {
        'name': 'zinb_hours_x_gender',
        'family': 'zinb',
        'count': ['visits', 'residency', 'gender', 'hours'],
        'inflation': ['gender'],
        'count_interactions': [['hours', 'gender']],
        'description': 'ZINB with hours x gender in the count part',
    },
    {
        'name': 'zinb_revenue_x_residency',
        'family': 'zinb',
        'count': ['visits', 'residency', 'gender', 'revenue'],
        'inflation': ['gender'],
        'count_interactions': [['revenue', 'residency']],
        'description': 'ZINB with revenue x residency in the count part',
    },
]

DEFAULT_CONFIG: Dict[str, Any] = {
    'scenario_name': 'complaints',
    'data_path': 'data/compdat.txt',
    'alpha': 0.05,
    'fitting': {
        'maxiter': 500,
        'methods': ['bfgs', 'lbfgs'],
        'separation_policy': 'drop',
        'scale_continuous': 'all',
    },
    'make_plots': True,
    'models': DEFAULT_CANDIDATES,
}

REQUIRED_FIELDS = ['data_path', 'alpha', 'models']


def load_configuration(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load and validate JSON configuration (DEFAULT_CONFIG when no path)"""
    if config_path is None:
        return json.loads(json.dumps(DEFAULT_CONFIG))

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = json.load(f)

    for field in REQUIRED_FIELDS:
        if field not in config:
            raise ValueError(f"Missing required field in config: {field}")

    fitting = {**DEFAULT_CONFIG['fitting'], **config.get('fitting', {})}
    SeparationPolicy.parse(fitting['separation_policy'])
    if fitting['scale_continuous'] not in SCALE_OPTIONS:
        raise ValueError(f"scale_continuous must be one of {SCALE_OPTIONS}, "
                         f"got {fitting['scale_continuous']!r}")
    config['fitting'] = fitting
    config.setdefault('make_plots', DEFAULT_CONFIG['make_plots'])
    config.setdefault('scenario_name', config_path.stem)

    if not 0 < float(config['alpha']) < 1:
        raise ValueError(f"alpha must be in (0, 1), got {config['alpha']}")
    if not config['models']:
        raise ValueError("Configuration lists no models")

    return config


# ============================================================================
# MAIN PIPELINE CLASS
# ============================================================================

class ModelPipeline:
    """
    Central execution framework for running all candidate specifications
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 output_dir: Optional[Path] = None,
                 log_dir: Optional[Path] = None):
        """
        Initialize the pipeline

        Args:
            config: Configuration dictionary (see DEFAULT_CONFIG)
            output_dir: Directory for tables, JSON summaries and plots
            log_dir: Directory for log files (None = console only)
        """
        self.config = dict(config) if config is not None else load_configuration()
        self.config['fitting'] = {**DEFAULT_CONFIG['fitting'], **self.config.get('fitting', {})}
        self.output_dir = Path(output_dir) if output_dir is not None else Path('./output')
        self.log_dir = Path(log_dir) if log_dir is not None else None

        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.specifications = [ModelSpecification.from_dict(m) for m in self.config['models']
                               if m.get('run', True)]

        # Results storage
        self.data: Optional[pd.DataFrame] = None
        self.data_summary: Dict[str, Any] = {}
        self.diagnostics: Optional[DiagnosticReport] = None
        self.results: Dict[str, FittedModel] = {}
        self.errors: Dict[str, Dict[str, str]] = {}
        self.comparison: Optional[ComparisonReport] = None

        self.setup_logging()

    def setup_logging(self):
        """Setup logging for the pipeline"""
        self.logger = logging.getLogger('ModelPipeline')
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            log_file = self.log_dir / f'pipeline_{timestamp}.log'
            root = logging.getLogger()
            fh = logging.FileHandler(log_file, encoding='utf-8')
            fh.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
            root.addHandler(fh)

        self.logger.info("=" * 80)
        self.logger.info("COMPLAINT MODEL PIPELINE INITIALIZED")
        self.logger.info("=" * 80)
        self.logger.info(f"Scenario: {self.config.get('scenario_name', 'complaints')}")
        self.logger.info(f"Candidates: {len(self.specifications)}")

    def load_data(self, data_path: Optional[Path] = None) -> pd.DataFrame:
        data_path = Path(data_path or self.config['data_path'])
        self.data = load_and_clean(data_path)
        self.data_summary = summarize_dataset(self.data)
        return self.data

    def run_diagnostics(self) -> DiagnosticReport:
        self.diagnostics = run_diagnostics(self.data, alpha=float(self.config['alpha']))
        return self.diagnostics

    def run_model_scenario(self, spec: ModelSpecification) -> Optional[FittedModel]:
        """
        Fit a single specification

        Returns:
            FittedModel, or None if the fit failed (error recorded in self.errors)
        """
        fitting = self.config['fitting']
        try:
            self.logger.info(f"Running {spec.name} ({spec.family})")
            fitted = fit_specification(
                self.data, spec,
                maxiter=int(fitting['maxiter']),
                methods=fitting['methods'],
                separation_policy=fitting['separation_policy'],
                scale_continuous=fitting['scale_continuous'],
                log_dir=self.log_dir,
                log_suffix=spec.name,
            )
            self.logger.info(f"  Success: logL = {fitted.log_likelihood:.3f}, AIC = {fitted.aic:.2f}")
            return fitted

        except Exception as e:
            # Log error but continue with other models
            self.logger.error(f"Failed to fit {spec.name}: {type(e).__name__}: {e}")
            self.logger.debug(traceback.format_exc())
            self.errors[spec.name] = {
                'error_type': type(e).__name__,
                'error': str(e),
                'traceback': traceback.format_exc(),
            }
            return None

    def run_all_models(self) -> Dict[str, FittedModel]:
        self.logger.info("=" * 80)
        self.logger.info("RUNNING ALL MODEL SPECIFICATIONS")
        self.logger.info("=" * 80)

        total = len(self.specifications)
        for i, spec in enumerate(self.specifications, 1):
            self.logger.info(f"[{i}/{total}] {spec.name}")
            fitted = self.run_model_scenario(spec)
            if fitted is not None:
                self.results[spec.name] = fitted

        self.logger.info(f"Successful fits: {len(self.results)}")
        self.logger.info(f"Failed fits: {len(self.errors)}")
        return self.results

    def generate_comparison_report(self) -> ComparisonReport:
        """Rank successful fits; failed ones are listed as excluded"""
        candidates: Dict[str, Any] = dict(self.results)
        for name, error in self.errors.items():
            candidates[name] = ModelFitError(f"{error['error_type']}: {error['error']}")

        self.comparison = compare_models(candidates)

        self.logger.info("\n" + "=" * 80)
        self.logger.info("MODEL COMPARISON (ranked by AIC)")
        self.logger.info("=" * 80)
        if not self.comparison.table.empty:
            with pd.option_context('display.max_columns', None, 'display.width', None,
                                   'display.float_format', '{:.3f}'.format):
                self.logger.info("\n" + self.comparison.table.to_string(index=False))
            self.logger.info(f"Best model: {self.comparison.best}")
        for name, reason in self.comparison.excluded.items():
            self.logger.info(f"  Excluded {name}: {reason}")

        return self.comparison

    def vuong_comparisons(self) -> Dict[str, Dict[str, Any]]:
        """ZINB candidates against the NB baseline"""
        baseline = next((f for f in self.results.values() if f.family == 'negbin'), None)
        if baseline is None:
            return {}

        tests = {}
        for name, fitted in self.results.items():
            if fitted.family != 'zinb':
                continue
            result = vuong_test(fitted, baseline, alpha=float(self.config['alpha']))
            tests[f"{name}_vs_{baseline.name}"] = result.to_dict()
            self.logger.info(f"Vuong {name} vs {baseline.name}: z={result.statistic:.3f}, "
                             f"p={result.p_value:.4f}, preferred={result.preferred}")
        return tests

    def save_results(self, vuong: Dict[str, Any]) -> None:
        """Save results to files"""
        if self.diagnostics is not None:
            with open(self.output_dir / 'diagnostics.json', 'w') as f:
                json.dump(self.diagnostics.to_dict(), f, indent=2, default=str)

        if self.comparison is not None:
            self.comparison.table.to_csv(self.output_dir / 'model_comparison.csv', index=False)

        coef_dir = self.output_dir / 'coefficients'
        coef_dir.mkdir(parents=True, exist_ok=True)
        for name, fitted in self.results.items():
            fitted.coefficient_table().to_csv(coef_dir / f'{name}.csv', index=False)

        summary = {
            'timestamp': datetime.now().isoformat(),
            'scenario': self.config.get('scenario_name'),
            'data': self.data_summary,
            'total_specifications': len(self.specifications),
            'successful': len(self.results),
            'failed': len(self.errors),
            'comparison': self.comparison.to_dict() if self.comparison is not None else None,
            'vuong': vuong,
            'models': {name: fitted.to_dict() for name, fitted in self.results.items()},
            'errors': {name: {k: v for k, v in e.items() if k != 'traceback'}
                       for name, e in self.errors.items()},
        }
        with open(self.output_dir / 'pipeline_summary.json', 'w') as f:
            json.dump(summary, f, indent=2, default=str)

        self.logger.info(f"Results saved to: {self.output_dir}")

    def generate_plots(self) -> List[Path]:
        from complaint_models import plots

        plot_dir = self.output_dir / 'figures'
        paths = [
            plots.plot_complaint_distribution(self.data, plot_dir / 'complaint_distribution.png'),
            plots.plot_complaints_by_group(self.data, plot_dir / 'complaints_by_gender.png'),
        ]
        if self.comparison is not None and not self.comparison.table.empty:
            paths.append(plots.plot_model_comparison(self.comparison.table,
                                                     plot_dir / 'model_comparison.png'))
            best = self.results[self.comparison.best]
            paths.append(plots.plot_rootogram(best, plot_dir / f'rootogram_{best.name}.png'))
            paths.append(plots.plot_residuals(best, plot_dir / f'residuals_{best.name}.png'))
        return paths

    def run(self, data_path: Optional[Path] = None) -> Dict[str, Any]:
        """Run the complete pipeline"""
        self.load_data(data_path)
        self.run_diagnostics()
        self.run_all_models()
        self.generate_comparison_report()
        vuong = self.vuong_comparisons()
        self.save_results(vuong)
        if self.config.get('make_plots', True):
            self.generate_plots()

        self.logger.info("=" * 80)
        self.logger.info("PIPELINE EXECUTION COMPLETE")
        self.logger.info("=" * 80)

        return {
            'diagnostics': self.diagnostics,
            'results': self.results,
            'errors': self.errors,
            'comparison': self.comparison,
            'vuong': vuong,
        }


# ============================================================================
# MAIN EXECUTION
# ============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Zero-inflated count models of doctor complaints")
    parser.add_argument('--config', type=Path, default=None,
                        help='JSON configuration file (default: built-in candidates)')
    parser.add_argument('--data', type=Path, default=None,
                        help='Tab-separated data file (overrides config data_path)')
    parser.add_argument('--output-dir', type=Path, default=Path('output'))
    parser.add_argument('--log-dir', type=Path, default=None)
    parser.add_argument('--no-plots', action='store_true')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()],
    )

    config = load_configuration(args.config)
    if args.data is not None:
        config['data_path'] = str(args.data)
    if args.no_plots:
        config['make_plots'] = False

    pipeline = ModelPipeline(config, output_dir=args.output_dir, log_dir=args.log_dir)
    outcome = pipeline.run()

    return 0 if outcome['results'] else 1


if __name__ == "__main__":
    raise SystemExit(main())
