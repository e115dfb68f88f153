from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np


class BISGError(Exception):
    """Base class for every error raised by bisgpy."""


class ConfigurationError(BISGError, ValueError):
    pass


class MalformedTableError(BISGError, ValueError):
    """A reference table failed validation and cannot be used."""


class UnknownCategoryError(MalformedTableError, KeyError):
    pass


class MalformedRecordError(BISGError, ValueError):
    pass


# match status values carried on every posterior
MATCH_BOTH = 'both'
MATCH_SURNAME = 'surname'
MATCH_GEOGRAPHY = 'geography'
MATCH_NONE = 'none'


def match_status(surname_matched: bool, geography_matched: bool) -> str:
    if surname_matched and geography_matched:
        return MATCH_BOTH
    if surname_matched:
        return MATCH_SURNAME
    if geography_matched:
        return MATCH_GEOGRAPHY
    return MATCH_NONE


class RaceCategories:
    """
    The closed, ordered set of race/ethnicity categories used for one run.

    Every distribution in bisgpy is stored as a numpy vector whose positions follow
    this ordering. Each category has a human readable label (``White``) and a short
    abbreviation (``whi``) that is used for output column names (``pred.whi``).
    Lookups accept either form, case-insensitively.
    """

    DEFAULT = (('White', 'whi'), ('Black', 'bla'), ('Hispanic', 'his'),
               ('Asian', 'asi'), ('Other', 'oth'))

    def __init__(self, categories=DEFAULT) -> None:
        pairs = []
        for item in categories:
            if isinstance(item, str):
                pairs.append((item, item[:3].lower()))
            else:
                label, abbreviation = item
                pairs.append((str(label), str(abbreviation)))
        if len(pairs) < 2:
            raise ValueError("At least two race categories are required")

        self._labels = tuple(label for label, _ in pairs)
        self._abbreviations = tuple(abbr for _, abbr in pairs)

        self._positions = {}
        for i, (label, abbr) in enumerate(pairs):
            for key in {label.lower(), abbr.lower()}:
                if key in self._positions and self._positions[key] != i:
                    raise ValueError(f"Race category name '{key}' is ambiguous")
                self._positions[key] = i

    @property
    def labels(self) -> Tuple[str, ...]:
        return self._labels

    @property
    def abbreviations(self) -> Tuple[str, ...]:
        return self._abbreviations

    @property
    def pred_columns(self):
        return [f'pred.{abbr}' for abbr in self._abbreviations]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self):
        return iter(self._labels)

    def __contains__(self, name) -> bool:
        return isinstance(name, str) and name.lower() in self._positions

    def __eq__(self, other) -> bool:
        return (isinstance(other, RaceCategories)
                and self._labels == other._labels
                and self._abbreviations == other._abbreviations)

    def __hash__(self) -> int:
        return hash((self._labels, self._abbreviations))

    def __repr__(self) -> str:
        return f"RaceCategories({list(zip(self._labels, self._abbreviations))})"

    def index(self, name: str) -> int:
        try:
            return self._positions[str(name).lower()]
        except KeyError:
            raise UnknownCategoryError(
                f"Unknown race category '{name}'; expected one of {list(self._labels)}") from None

    def uniform(self) -> np.ndarray:
        return np.full(len(self), 1.0 / len(self))

    def vector(self, mapping: Mapping[str, float]) -> np.ndarray:
        """Build a vector from a {category: value} mapping; missing categories are an error."""
        values = np.full(len(self), np.nan)
        for name, value in mapping.items():
            values[self.index(name)] = float(value)
        if np.isnan(values).any():
            missing = [label for label, v in zip(self._labels, values) if np.isnan(v)]
            raise MalformedTableError(f"Distribution is missing categories {missing}")
        return values

    def as_dict(self, values) -> Dict[str, float]:
        return {label: float(v) for label, v in zip(self._labels, values)}


def _frozen_vector(values) -> np.ndarray:
    array = np.array(values, dtype=float)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class SurnameDistribution:
    surname: str
    probabilities: np.ndarray
    categories: RaceCategories
    matched: bool

    def __post_init__(self):
        object.__setattr__(self, 'probabilities', _frozen_vector(self.probabilities))

    def as_dict(self) -> Dict[str, float]:
        return self.categories.as_dict(self.probabilities)


@dataclass(frozen=True, eq=False)
class GeographyComposition:
    geoid: Optional[str]
    requested_resolution: str
    resolution: Optional[str]
    proportions: np.ndarray
    categories: RaceCategories
    matched: bool
    stratum: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'proportions', _frozen_vector(self.proportions))

    @property
    def escalated(self) -> bool:
        return self.matched and self.resolution != self.requested_resolution

    def as_dict(self) -> Dict[str, float]:
        return self.categories.as_dict(self.proportions)


@dataclass(frozen=True, eq=False)
class IndividualRecord:
    """One person in a batch. ``geoid`` is a census GEOID at any resolution."""

    id: Any
    surname: Optional[str]
    geoid: Optional[str] = None
    age: Optional[Any] = None
    sex: Optional[Any] = None
    fields: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str, default=None):
        if name in ('id', 'surname', 'geoid', 'age', 'sex'):
            return getattr(self, name)
        return self.fields.get(name, default)


@dataclass(frozen=True, eq=False)
class PosteriorResult:
    id: Any
    probabilities: np.ndarray
    categories: RaceCategories
    surname_matched: bool
    geography_matched: bool
    method: str
    geo_level: Optional[str] = None
    degraded: bool = False
    low_confidence: bool = False
    record: Optional[IndividualRecord] = None

    def __post_init__(self):
        object.__setattr__(self, 'probabilities', _frozen_vector(self.probabilities))

    @property
    def match_status(self) -> str:
        return match_status(self.surname_matched, self.geography_matched)

    def get(self, name: str, default=None):
        """Record field lookup used for grouping; without a record only ``id`` is known."""
        if self.record is not None:
            return self.record.get(name, default)
        if name == 'id':
            return self.id
        raise TypeError(f"Cannot group by '{name}': the posterior carries no source record")

    def as_dict(self) -> Dict[str, float]:
        return self.categories.as_dict(self.probabilities)

    def __getitem__(self, category: str) -> float:
        return float(self.probabilities[self.categories.index(category)])


@dataclass(frozen=True, eq=False)
class AggregateResult:
    key: Any
    statistic: str
    count: int
    values: np.ndarray
    categories: RaceCategories

    def __post_init__(self):
        object.__setattr__(self, 'values', _frozen_vector(self.values))

    def as_dict(self) -> Dict[str, float]:
        return self.categories.as_dict(self.values)

    def __getitem__(self, category: str) -> float:
        return float(self.values[self.categories.index(category)])
