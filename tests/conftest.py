"""Small synthetic reference tables shared by the test modules."""

import pandas as pd
import pytest

from bisgpy import BISGConfig, BISGEngine, GeographyRaceTable, RaceCategories, SurnamePriorTable

REFERENCE = {'White': 0.6, 'Black': 0.13, 'Hispanic': 0.18, 'Asian': 0.06, 'Other': 0.03}

SURNAMES = {
    'WASHINGTON': {'White': 0.01, 'Black': 0.90, 'Hispanic': 0.02, 'Asian': 0.01, 'Other': 0.06},
    'SMITH': {'White': 0.70, 'Black': 0.23, 'Hispanic': 0.02, 'Asian': 0.01, 'Other': 0.04},
    'GARCIA': {'White': 0.05, 'Black': 0.005, 'Hispanic': 0.92, 'Asian': 0.015, 'Other': 0.01},
    'NGUYEN': {'White': 0.02, 'Black': 0.002, 'Hispanic': 0.006, 'Asian': 0.96, 'Other': 0.012},
    'ONLYASIAN': {'White': 0.0, 'Black': 0.0, 'Hispanic': 0.0, 'Asian': 1.0, 'Other': 0.0},
    'ALL OTHER NAMES': {'White': 0.5, 'Black': 0.2, 'Hispanic': 0.2, 'Asian': 0.05, 'Other': 0.05},
}

# geoid -> (White, Black, Hispanic, Asian, Other) proportions
GEOGRAPHY_PROPORTIONS = {
    '01': (0.7, 0.2, 0.05, 0.03, 0.02),
    '01001': (0.6, 0.3, 0.05, 0.03, 0.02),
    '01001000100': (0.5, 0.4, 0.05, 0.03, 0.02),
    '01001000200': (0.9, 0.05, 0.03, 0.0, 0.02),
    '01003': (0.8, 0.1, 0.05, 0.04, 0.01),
}

# block geoid -> population counts
BLOCK_COUNTS = {
    '010010001001000': (50, 40, 5, 3, 2),
    '010010001001001': (0, 0, 0, 0, 0),
    '010010001002000': (10, 80, 5, 3, 2),
    '010030002001000': (90, 5, 3, 1, 1),
}

# (age, sex) -> counts for tract 01001000100
STRATA_COUNTS = {
    ('18-29', 'F'): (10, 30, 5, 3, 2),
    ('18-29', 'M'): (20, 20, 5, 3, 2),
    ('30-44', 'F'): (40, 5, 2, 2, 1),
    ('30-44', 'M'): (30, 15, 2, 2, 1),
}

LABELS = ['White', 'Black', 'Hispanic', 'Asian', 'Other']


def frame_from(rows: dict, key: str = 'geoid') -> pd.DataFrame:
    return pd.DataFrame([{key: k, **dict(zip(LABELS, v))} for k, v in rows.items()])


@pytest.fixture
def categories() -> RaceCategories:
    return RaceCategories()


@pytest.fixture
def surname_table() -> SurnamePriorTable:
    return SurnamePriorTable(SURNAMES)


@pytest.fixture
def geography_table() -> GeographyRaceTable:
    return GeographyRaceTable(frame_from(GEOGRAPHY_PROPORTIONS), values='proportions', reference=REFERENCE)


@pytest.fixture
def block_table() -> GeographyRaceTable:
    return GeographyRaceTable(frame_from(BLOCK_COUNTS), values='counts')


@pytest.fixture
def strata_table() -> GeographyRaceTable:
    rows = [{'geoid': '01001000100', 'age': age, 'sex': sex, **dict(zip(LABELS, counts))}
            for (age, sex), counts in STRATA_COUNTS.items()]
    return GeographyRaceTable(pd.DataFrame(rows), values='counts', reference=REFERENCE)


@pytest.fixture
def engine(surname_table, geography_table) -> BISGEngine:
    return BISGEngine(surname_table, geography_table, BISGConfig(resolution='tract'))
