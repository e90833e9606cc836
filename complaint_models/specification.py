"""
specification.py
================
Explicit model specifications and design-matrix construction.

A ModelSpecification replaces formula strings: it lists the count-model
predictors, the zero-inflation predictors, and interaction pairs for each
sub-model. build_design() turns a specification plus a cleaned dataset into
the numeric matrices the fitting engine consumes.

Encoding rules:
- Categorical predictors -> treatment indicators against the first level
  (gender -> gender_male, residency -> residency_yes)
- Continuous predictors used in an interaction are centred and scaled, both as
  main effect and inside the product, to decorrelate main effect and interaction
- With standardize=True, revenue and hours are centred and scaled as well
- An intercept column 'const' is always first
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from complaint_models.data_loader import (
    CATEGORY_LEVELS, CONTINUOUS_COLUMNS, NUMERIC_PREDICTORS, RESPONSE,
)
from complaint_models.exceptions import InvalidSpecification

logger = logging.getLogger(__name__)

FAMILIES = ('poisson', 'negbin', 'zip', 'zinb')
INFLATION_FAMILIES = ('zip', 'zinb')


@dataclass(frozen=True)
class Interaction:
    """Product of two base predictors"""
    left: str
    right: str

    @property
    def name(self) -> str:
        return f"{self.left}_x_{self.right}"

    @property
    def predictors(self) -> Tuple[str, str]:
        return (self.left, self.right)

    @classmethod
    def parse(cls, value: Any) -> 'Interaction':
        if isinstance(value, Interaction):
            return value
        if isinstance(value, str):
            parts = [p.strip() for p in value.replace('*', ':').split(':')]
        else:
            parts = list(value)
        if len(parts) != 2:
            raise InvalidSpecification(f"Interaction must name two predictors, got {value!r}")
        return cls(str(parts[0]), str(parts[1]))


@dataclass(frozen=True)
class ModelSpecification:
    """Predictor sets for the count and zero-inflation sub-models"""
    name: str
    family: str = 'zinb'
    count: Tuple[str, ...] = ()
    inflation: Tuple[str, ...] = ()
    count_interactions: Tuple[Interaction, ...] = ()
    inflation_interactions: Tuple[Interaction, ...] = ()
    description: str = ''

    def __post_init__(self):
        # Normalise list inputs so the record stays hashable and immutable
        object.__setattr__(self, 'family', str(self.family).lower())
        object.__setattr__(self, 'count', tuple(self.count))
        object.__setattr__(self, 'inflation', tuple(self.inflation))
        object.__setattr__(self, 'count_interactions',
                           tuple(Interaction.parse(i) for i in self.count_interactions))
        object.__setattr__(self, 'inflation_interactions',
                           tuple(Interaction.parse(i) for i in self.inflation_interactions))

    @property
    def has_inflation(self) -> bool:
        return self.family in INFLATION_FAMILIES

    def without_inflation(self, predictors: Sequence[str]) -> 'ModelSpecification':
        """Copy with `predictors` (and interactions using them) removed from the inflation part"""
        drop = set(predictors)
        return replace(
            self,
            inflation=tuple(p for p in self.inflation if p not in drop),
            inflation_interactions=tuple(
                i for i in self.inflation_interactions if not drop.intersection(i.predictors)
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'family': self.family,
            'count': list(self.count),
            'inflation': list(self.inflation),
            'count_interactions': [list(i.predictors) for i in self.count_interactions],
            'inflation_interactions': [list(i.predictors) for i in self.inflation_interactions],
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'ModelSpecification':
        if 'name' not in config:
            raise InvalidSpecification(f"Model specification without a name: {config}")
        return cls(
            name=config['name'],
            family=config.get('family', 'zinb'),
            count=tuple(config.get('count', ())),
            inflation=tuple(config.get('inflation', ())),
            count_interactions=tuple(config.get('count_interactions', ())),
            inflation_interactions=tuple(config.get('inflation_interactions', ())),
            description=config.get('description', ''),
        )


def _declared_names(predictors: Sequence[str], interactions: Sequence[Interaction]) -> List[str]:
    names = list(predictors)
    for interaction in interactions:
        for name in interaction.predictors:
            if name not in names:
                names.append(name)
    return names


def validate_specification(df: pd.DataFrame, spec: ModelSpecification) -> None:
    """Fail fast on specifications that would push NaNs into the optimizer"""
    if spec.family not in FAMILIES:
        raise InvalidSpecification(
            f"Unknown family '{spec.family}' in {spec.name}; expected one of {FAMILIES}", spec=spec
        )
    if not spec.has_inflation and (spec.inflation or spec.inflation_interactions):
        raise InvalidSpecification(
            f"{spec.name}: family '{spec.family}' has no zero-inflation part "
            f"but inflation predictors were given", spec=spec
        )

    if len(df) == 0:
        raise InvalidSpecification(f"{spec.name}: dataset is empty", spec=spec)
    if RESPONSE not in df.columns:
        raise InvalidSpecification(f"{spec.name}: response '{RESPONSE}' missing", spec=spec)
    if (df[RESPONSE] == 0).all():
        raise InvalidSpecification(f"{spec.name}: response is zero for every observation", spec=spec)

    known = set(NUMERIC_PREDICTORS) | set(CATEGORY_LEVELS)
    names = (_declared_names(spec.count, spec.count_interactions)
             + _declared_names(spec.inflation, spec.inflation_interactions))
    for name in names:
        if name not in known or name not in df.columns:
            raise InvalidSpecification(f"{spec.name}: unknown predictor '{name}'", spec=spec)
        if df[name].nunique(dropna=True) < 2:
            raise InvalidSpecification(
                f"{spec.name}: predictor '{name}' has zero variance", spec=spec
            )

    for interaction in spec.count_interactions + spec.inflation_interactions:
        if interaction.left == interaction.right:
            raise InvalidSpecification(
                f"{spec.name}: interaction '{interaction.name}' pairs a predictor with itself",
                spec=spec,
            )

    parts = [('count', spec.count, spec.count_interactions)]
    if spec.has_inflation:
        parts.append(('zero-inflation', spec.inflation, spec.inflation_interactions))
    for part, predictors, interactions in parts:
        design = build_design(df, predictors, interactions)
        rank = np.linalg.matrix_rank(design.to_numpy(dtype=float))
        if rank < design.shape[1]:
            raise InvalidSpecification(
                f"{spec.name}: {part} design is rank deficient "
                f"(rank {rank} < {design.shape[1]} columns: {', '.join(design.columns)})",
                spec=spec,
            )


def _indicator(df: pd.DataFrame, name: str) -> Tuple[str, np.ndarray]:
    """Treatment indicator for a two-level categorical column"""
    level = CATEGORY_LEVELS[name][1]
    values = (df[name].astype(object) == level).astype(float).to_numpy()
    return f"{name}_{level}", values


def _standardize(values: np.ndarray) -> np.ndarray:
    scaler = StandardScaler()
    return scaler.fit_transform(values.reshape(-1, 1)).ravel()


def build_design(df: pd.DataFrame,
                 predictors: Sequence[str],
                 interactions: Sequence[Interaction] = (),
                 standardize: bool = False) -> pd.DataFrame:
    """
    Build a design matrix for one sub-model

    Args:
        df: Cleaned dataset
        predictors: Base predictor names (main effects)
        interactions: Interaction pairs added after the main effects
        standardize: Centre and scale the continuous measurements (revenue, hours)
            as '{name}_std' columns

    Returns:
        DataFrame with 'const' first, then main effects, then interactions
    """
    interactions = [Interaction.parse(i) for i in interactions]

    # Continuous predictors entering any interaction are standardised everywhere
    scaled = {name for i in interactions for name in i.predictors if name in NUMERIC_PREDICTORS}
    if standardize:
        scaled.update(name for name in _declared_names(predictors, interactions)
                      if name in CONTINUOUS_COLUMNS)

    def column_for(name: str) -> Tuple[str, np.ndarray]:
        if name in CATEGORY_LEVELS:
            return _indicator(df, name)
        values = df[name].to_numpy(dtype=float)
        if name in scaled:
            return f"{name}_std", _standardize(values)
        return name, values

    columns: Dict[str, np.ndarray] = {'const': np.ones(len(df))}

    for name in predictors:
        col_name, values = column_for(name)
        columns[col_name] = values

    for interaction in interactions:
        _, left = column_for(interaction.left)
        _, right = column_for(interaction.right)
        columns[interaction.name] = left * right

    design = pd.DataFrame(columns, index=df.index)

    logger.debug(f"Design matrix: {design.shape[0]} rows x {design.shape[1]} columns "
                 f"[{', '.join(design.columns)}]")
    if scaled:
        logger.debug(f"  Standardised: {sorted(scaled)}")
    return design
