from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .Records import ConfigurationError, RaceCategories


class EvidenceMode(str, Enum):
    SURNAME_ONLY = 'surname_only'
    GEOGRAPHY_ONLY = 'geography_only'
    JOINT = 'joint'


# coarsest to finest, with the length of the census GEOID prefix at each level
RESOLUTIONS = ('state', 'county', 'tract', 'block_group', 'block')
GEOID_LENGTHS = {'state': 2, 'county': 5, 'tract': 11, 'block_group': 12, 'block': 15}

FALLBACK_STRATEGIES = ('uniform', 'reference')
BAD_RECORD_POLICIES = ('degrade', 'skip')
STATISTICS = ('mean', 'sum')


def resolve_mode(mode=None, use_surname: Optional[bool] = None, surname_only: Optional[bool] = None) -> EvidenceMode:
    """
    Turn the evidence switches into a single EvidenceMode.

    ``use_surname`` and ``surname_only`` are the older pair of flags. Setting
    ``surname_only`` while switching surnames off has no sensible meaning, so it is
    rejected rather than guessed at, as is a flag pair that contradicts an explicit mode.
    """
    if surname_only and use_surname is False:
        raise ConfigurationError("surname_only=True cannot be combined with use_surname=False")

    implied = None
    if surname_only:
        implied = EvidenceMode.SURNAME_ONLY
    elif use_surname is False:
        implied = EvidenceMode.GEOGRAPHY_ONLY
    elif use_surname is True or surname_only is False:
        implied = EvidenceMode.JOINT

    if mode is None:
        return implied or EvidenceMode.JOINT
    try:
        mode = EvidenceMode(mode)
    except ValueError:
        raise ConfigurationError(
            f"Unknown evidence mode '{mode}'; expected one of {[m.value for m in EvidenceMode]}") from None
    if implied is not None and implied != mode:
        raise ConfigurationError(
            f"Evidence mode '{mode.value}' contradicts use_surname={use_surname}, surname_only={surname_only}")
    return mode


@dataclass(frozen=True)
class BISGConfig:
    """
    Every option that changes how a batch is estimated. Instances are immutable and
    are passed explicitly into each estimation call, so a single process can run
    several configurations side by side.
    """

    categories: RaceCategories = field(default_factory=RaceCategories)
    mode: Optional[EvidenceMode] = None
    resolution: str = 'block'
    fallback: str = 'uniform'
    use_age: bool = False
    use_sex: bool = False
    on_bad_record: str = 'degrade'
    epsilon: float = 1e-6
    delta: float = 0.01
    use_surname: Optional[bool] = None
    surname_only: Optional[bool] = None

    def __post_init__(self):
        if not isinstance(self.categories, RaceCategories):
            object.__setattr__(self, 'categories', RaceCategories(self.categories))
        object.__setattr__(self, 'mode', resolve_mode(self.mode, self.use_surname, self.surname_only))

        if self.resolution not in GEOID_LENGTHS:
            raise ConfigurationError(
                f"Unknown geography resolution '{self.resolution}'; expected one of {list(RESOLUTIONS)}")
        if self.fallback not in FALLBACK_STRATEGIES:
            raise ConfigurationError(
                f"Unknown fallback strategy '{self.fallback}'; expected one of {list(FALLBACK_STRATEGIES)}")
        if self.on_bad_record not in BAD_RECORD_POLICIES:
            raise ConfigurationError(
                f"Unknown on_bad_record policy '{self.on_bad_record}'; expected one of {list(BAD_RECORD_POLICIES)}")
        if not 0 < self.epsilon < self.delta < 1:
            raise ConfigurationError("Tolerances must satisfy 0 < epsilon < delta < 1")

    @property
    def use_covariates(self) -> bool:
        return self.use_age or self.use_sex

    def replace(self, **changes) -> 'BISGConfig':
        # a new mode supersedes the legacy flags and vice versa
        legacy = 'use_surname' in changes or 'surname_only' in changes
        if 'mode' in changes and not legacy:
            changes.update(use_surname=None, surname_only=None)
        elif legacy and 'mode' not in changes:
            changes['mode'] = None
        return replace(self, **changes)
