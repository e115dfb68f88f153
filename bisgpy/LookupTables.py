import logging
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from .Config import FALLBACK_STRATEGIES, GEOID_LENGTHS, RESOLUTIONS
from .DataFrameUtils import (best_subname, check_counts, check_distributions, clean_name,
                             geoid_column, input_to_dataframe, normalize_rows)
from .Records import (ConfigurationError, GeographyComposition, MalformedTableError, RaceCategories,
                      SurnameDistribution)

logger = logging.getLogger(__name__)

LEVEL_BY_LENGTH = {length: level for level, length in GEOID_LENGTHS.items()}
GEOGRAPHY_COMPONENTS = ('state', 'county', 'tract', 'block_group', 'block')

# census surname list race groups feeding each default category
CENSUS_SURNAME_MAP = {
    'White': ['white'],
    'Black': ['black'],
    'Hispanic': ['hispanic'],
    'Asian': ['api'],
    'Other': ['aian', '2prace'],
}

# census race count columns feeding each default category, after the "Other" redistribution
CENSUS_GEOGRAPHY_MAP = {
    'White': ['NH_White_alone'],
    'Black': ['NH_Black_alone'],
    'Hispanic': ['Hispanic_Total'],
    'Asian': ['NH_API_alone'],
    'Other': ['NH_AIAN_alone', 'NH_Mult_Total'],
}


class SurnameMatch(NamedTuple):
    names: pd.Series
    probabilities: np.ndarray
    matched: np.ndarray
    present: np.ndarray


class GeographyMatch(NamedTuple):
    proportions: np.ndarray
    matched: np.ndarray
    levels: np.ndarray
    strata: np.ndarray


def _as_vector(distribution, categories: RaceCategories, delta: float, what: str) -> np.ndarray:
    if isinstance(distribution, dict):
        values = categories.vector(distribution)
    else:
        values = np.asarray(distribution, dtype=float)
        if values.shape != (len(categories),):
            raise MalformedTableError(
                f"{what} must have one value per race category ({len(categories)})")
    return check_distributions(values[None, :], delta, [what], what)[0]


def _category_columns(frame: pd.DataFrame, categories: RaceCategories, value_columns=None,
                      exclude=()) -> list:
    """
    Return the frame columns holding each category's values, in category order.
    Columns are matched by label, abbreviation or ``pred.<abbreviation>``; an explicit
    ``value_columns`` mapping of column -> category overrides the matching.
    """
    found = {}
    if value_columns is not None:
        for column, name in value_columns.items():
            if column not in frame.columns:
                raise MalformedTableError(f"Column '{column}' is not in the reference table")
            position = categories.index(name)
            if position in found:
                raise MalformedTableError(f"Race category '{name}' is mapped to more than one column")
            found[position] = column
    else:
        for column in frame.columns:
            if column in exclude:
                continue
            name = str(column)
            if name.lower().startswith('pred.'):
                name = name[5:]
            if name in categories:
                position = categories.index(name)
                if position in found:
                    raise MalformedTableError(
                        f"Race category '{categories.labels[position]}' matches more than one column")
                found[position] = column

    missing = [label for i, label in enumerate(categories.labels) if i not in found]
    if missing:
        raise MalformedTableError(f"Reference table has no column for race categories {missing}")
    return [found[i] for i in range(len(categories))]


class SurnamePriorTable:
    """
    Immutable lookup from a normalized surname to p(race | surname).

    The table is built once from a surname source (a DataFrame, a .csv/.dta path, or a
    ``{surname: {category: probability}}`` mapping) with a surname column and one
    probability column per race category. Keys are normalized with ``clean_name`` so
    raw and normalized spellings find the same row. A row keyed by ``fallback_key``
    (the census "ALL OTHER NAMES" row by default) becomes the distribution returned for
    surnames that are not in the table; without one, ``fallback`` picks a uniform
    distribution or the ``reference`` population distribution.

    Any malformed row (negative values, a total outside 1 +/- delta, duplicate names)
    raises MalformedTableError; a table that fails to build cannot be used at all.
    """

    def __init__(self,
                 surname_data,
                 categories: Optional[RaceCategories] = None,
                 surname_column: str = 'surname',
                 value_columns=None,
                 fallback_key: Optional[str] = 'ALL OTHER NAMES',
                 fallback: str = 'uniform',
                 reference=None,
                 delta: float = 0.01
                 ) -> None:

        self.categories = categories if categories is not None else RaceCategories()
        if fallback not in FALLBACK_STRATEGIES:
            raise ConfigurationError(f"Unknown fallback strategy '{fallback}'")

        if isinstance(surname_data, dict):
            for distribution in surname_data.values():
                for name in distribution:
                    self.categories.index(name)
            surname_data = pd.DataFrame(
                [{surname_column: name, **dist} for name, dist in surname_data.items()])
        frame = input_to_dataframe(surname_data, [surname_column])
        if surname_column not in frame.columns:
            raise MalformedTableError(f"Surname table has no '{surname_column}' column")
        columns = _category_columns(frame, self.categories, value_columns, exclude=(surname_column,))

        names = frame[surname_column].map(clean_name)
        if names.isna().any() or (names == '').any():
            raise MalformedTableError("Surname table contains empty or missing surnames")

        values = frame[columns].apply(pd.to_numeric, errors='coerce').to_numpy(dtype=float)
        values = check_distributions(values, delta, names.to_numpy(), 'surname')

        fallback_name = clean_name(fallback_key) if fallback_key else None
        is_fallback = (names == fallback_name).to_numpy() if fallback_name else np.zeros(len(names), bool)
        if is_fallback.sum() > 1:
            raise MalformedTableError(f"Surname table has more than one '{fallback_key}' row")

        if is_fallback.any():
            self._fallback = values[is_fallback][0]
            self.fallback_source = 'table'
        elif fallback == 'reference':
            if reference is None:
                raise ConfigurationError(
                    "fallback='reference' needs reference proportions when the table has no fallback row")
            self._fallback = _as_vector(reference, self.categories, delta, 'reference distribution')
            self.fallback_source = 'reference'
        else:
            self._fallback = self.categories.uniform()
            self.fallback_source = 'uniform'
        self._fallback.setflags(write=False)

        names = names[~is_fallback]
        values = values[~is_fallback]
        duplicated = names.duplicated(keep=False)
        if duplicated.any():
            raise MalformedTableError(
                f"Surname table has duplicate names after normalization: {sorted(set(names[duplicated]))[:5]}")

        self._names = pd.Index(names.to_numpy(), dtype=object)
        self._name_set = frozenset(self._names)
        self._values = np.ascontiguousarray(values)
        self._values.setflags(write=False)

        logger.info("Built surname table: %d surnames, fallback from %s", len(self), self.fallback_source)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, surname) -> bool:
        name = clean_name(surname)
        return isinstance(name, str) and best_subname(name, self._name_set) in self._name_set

    @property
    def fallback_distribution(self) -> np.ndarray:
        return self._fallback

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self._values, columns=list(self.categories.labels))
        frame.insert(0, 'surname', list(self._names))
        return frame

    def lookup(self, surname) -> SurnameDistribution:
        match = self.lookup_many(pd.Series([surname], dtype=object))
        return SurnameDistribution(
            surname=match.names.iloc[0],
            probabilities=match.probabilities[0],
            categories=self.categories,
            matched=bool(match.matched[0]))

    def lookup_many(self, surnames: pd.Series) -> SurnameMatch:
        """
        Vectorized lookup. Rows whose surname is missing or normalizes to nothing are
        reported as not ``present``; absent surnames get the fallback distribution.
        """
        names = surnames.map(clean_name).map(lambda x: best_subname(x, self._name_set))
        present = names.map(lambda x: isinstance(x, str) and x != '').to_numpy(dtype=bool)

        positions = self._names.get_indexer(names.where(present, None).to_numpy(dtype=object))
        matched = present & (positions >= 0)

        probabilities = np.tile(self._fallback, (len(names), 1))
        probabilities[matched] = self._values[positions[matched]]
        return SurnameMatch(names=names, probabilities=probabilities, matched=matched, present=present)

    @classmethod
    def from_census(cls, surname_data, categories: Optional[RaceCategories] = None, census_map=None, **kwargs):
        """
        Build the table from one or more census surname files (``name, count, pctwhite,
        pctblack, pctapi, pctaian, pct2prace, pcthispanic``). Files are given in
        priority order: a name already seen in an earlier file is dropped from later
        ones. Suppressed ``(S)`` cells share whatever part of the name's count is not
        assigned to the reported groups.
        """
        census_race_list = ['white', 'black', 'api', 'aian', '2prace', 'hispanic']
        census_map = census_map if census_map is not None else CENSUS_SURNAME_MAP

        # Part 1: Combining all dataframes passed into one
        if not isinstance(surname_data, (list, tuple)):
            surname_data = [surname_data]
        surname_data = [input_to_dataframe(dataframe, ['name']).copy() for dataframe in surname_data]
        for dataframe in surname_data:
            dataframe["name"] = dataframe["name"].map(clean_name)

        full_surname_dataframe = surname_data[0]
        for lower_priority_dataframe in surname_data[1:]:
            full_surname_dataframe = pd.concat(
                [full_surname_dataframe, lower_priority_dataframe[~lower_priority_dataframe["name"].isin(full_surname_dataframe["name"])]])
        full_surname_dataframe = full_surname_dataframe.dropna(subset=["name"])
        full_surname_dataframe = full_surname_dataframe.drop_duplicates(subset=["name"], keep="first")

        race_list_pct = ["pct" + race for race in census_race_list]
        missing = [col for col in ["name", "count"] + race_list_pct if col not in full_surname_dataframe.columns]
        if missing:
            raise MalformedTableError(f"Surnames data passed does not contain the columns {missing}")

        # Part 2: percentages to proportions, "(S)" becomes missing
        for x in race_list_pct:
            full_surname_dataframe[x] = pd.to_numeric(
                full_surname_dataframe[x].replace('(S)', np.nan), errors='coerce') / 100
        full_surname_dataframe["count"] = pd.to_numeric(full_surname_dataframe["count"], errors='coerce')

        # add a field for how many of the race/eth percentages are missing
        full_surname_dataframe["countmiss"] = full_surname_dataframe[race_list_pct].isna().sum(axis=1)

        # replace remaining = count * (1 - remaining): individuals not yet assigned
        full_surname_dataframe["remaining"] = full_surname_dataframe["count"] * (
            1 - full_surname_dataframe[race_list_pct].sum(axis=1))

        # divide proportions equally (1/n_missing)*(n_remaining/n_total)
        for x in race_list_pct:
            full_surname_dataframe[x] = np.where(
                full_surname_dataframe[x].isna(),
                full_surname_dataframe["remaining"] / (full_surname_dataframe["countmiss"] * full_surname_dataframe["count"]),
                full_surname_dataframe[x])

        table = pd.DataFrame({'surname': full_surname_dataframe["name"].to_numpy()})
        for category, groups in census_map.items():
            table[category] = full_surname_dataframe[["pct" + group for group in groups]].sum(axis=1).to_numpy()

        logger.info("Read %d census surnames from %d source(s)", len(table), len(surname_data))
        return cls(table, categories=categories, surname_column='surname', **kwargs)


def _stratum_value(value) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


class GeographyRaceTable:
    """
    Immutable lookup from a census geography to p(race | geography).

    Rows are keyed by a census GEOID, given directly or composed from component
    columns (state, county, tract, block_group, block); the length of each GEOID sets
    its resolution, so one source may mix resolutions. Values are either raw
    population counts (normalized on load, with coarser resolutions rolled up from
    finer rows when the source does not list them) or proportions summing to one.

    Optional ``age``/``sex`` columns hold stratified compositions used when auxiliary
    covariates are switched on. With counts, the unstratified and single-covariate
    margins are summed from the fully stratified rows.

    ``reference`` is the population-wide p(race) used both to turn compositions into
    likelihoods and as the composition of last resort. With counts it defaults to the
    national totals of the table itself.
    """

    def __init__(self,
                 geography_data,
                 categories: Optional[RaceCategories] = None,
                 values: str = 'counts',
                 geoid_column_name: Optional[str] = None,
                 component_columns=None,
                 stratum_columns=('age', 'sex'),
                 value_columns=None,
                 reference=None,
                 fallback: str = 'reference',
                 delta: float = 0.01
                 ) -> None:

        self.categories = categories if categories is not None else RaceCategories()
        if values not in ('counts', 'proportions'):
            raise ConfigurationError("values must be either 'counts' or 'proportions'")
        if fallback not in FALLBACK_STRATEGIES:
            raise ConfigurationError(f"Unknown fallback strategy '{fallback}'")
        self.values = values

        frame = input_to_dataframe(geography_data)
        if geoid_column_name is None and component_columns is None:
            if 'geoid' in frame.columns:
                geoid_column_name = 'geoid'
            else:
                component_columns = {c: c for c in GEOGRAPHY_COMPONENTS if c in frame.columns}
        elif isinstance(component_columns, (list, tuple)):
            component_columns = {c: c for c in component_columns}
        id_columns = [geoid_column_name] if geoid_column_name else list(component_columns.values())
        if not id_columns or any(c not in frame.columns for c in id_columns):
            raise MalformedTableError(
                f"Geography table needs a geoid column or component columns {list(GEOGRAPHY_COMPONENTS)}; got {list(frame.columns)}")
        if isinstance(geography_data, str) and geography_data[-3:] == 'csv':
            # read again so geography codes keep their leading zeros
            frame = input_to_dataframe(geography_data, id_columns)

        self.stratum_columns = tuple(c for c in stratum_columns if c in frame.columns)
        key_columns = set(id_columns) | set(self.stratum_columns)
        columns = _category_columns(frame, self.categories, value_columns, exclude=key_columns)

        geoids = geoid_column(frame, geoid_column_name, component_columns)
        bad = geoids.map(lambda g: not isinstance(g, str)).to_numpy(dtype=bool)
        if bad.any():
            raise MalformedTableError(
                f"{int(bad.sum())} geography row(s) have a missing or unparseable GEOID, e.g. rows {list(frame.index[bad][:5])}")

        raw = frame[columns].apply(pd.to_numeric, errors='coerce').to_numpy(dtype=float)
        if values == 'counts':
            check_counts(raw, geoids.to_numpy(), 'geography count')
        else:
            raw = check_distributions(raw, delta, geoids.to_numpy(), 'geography')

        strata = {c: frame[c].map(_stratum_value).to_numpy(dtype=object) for c in self.stratum_columns}
        table = pd.DataFrame(raw, columns=list(range(len(self.categories))))
        table['geoid'] = geoids.to_numpy(dtype=object)
        table['level'] = table['geoid'].str.len().map(LEVEL_BY_LENGTH)
        for c in ('age', 'sex'):
            table[c] = strata.get(c, np.full(len(table), '', dtype=object))

        duplicated = table.duplicated(subset=['geoid', 'age', 'sex'], keep=False)
        if duplicated.any():
            raise MalformedTableError(
                f"Geography table has duplicate keys: {sorted(set(table.loc[duplicated, 'geoid']))[:5]}")

        value_cols = list(range(len(self.categories)))
        if values == 'counts':
            table = self._marginalize_strata(table, value_cols)
            table = self._roll_up(table, value_cols)

        self._levels = {}
        self._totals = {}
        for level in RESOLUTIONS:
            rows = table[table['level'] == level]
            if rows.empty:
                continue
            index = pd.MultiIndex.from_arrays(
                [rows['geoid'].to_numpy(dtype=object), rows['age'].to_numpy(dtype=object),
                 rows['sex'].to_numpy(dtype=object)], names=['geoid', 'age', 'sex'])
            counts = rows[value_cols].to_numpy(dtype=float)
            proportions, _ = normalize_rows(counts)
            proportions.setflags(write=False)
            totals = counts.sum(axis=1)
            totals.setflags(write=False)
            self._levels[level] = (index, proportions)
            self._totals[level] = totals

        if reference is not None:
            self._reference = _as_vector(reference, self.categories, delta, 'reference distribution')
        elif values == 'counts':
            national = self._national_counts(table, value_cols)
            if national.sum() <= 0:
                raise MalformedTableError("Geography table has no population to derive reference proportions from")
            self._reference = national / national.sum()
        else:
            raise MalformedTableError(
                "A geography table of proportions needs explicit reference population proportions")
        if (self._reference <= 0).any():
            raise MalformedTableError(
                "Reference population proportions must be positive for every race category")
        self._reference.setflags(write=False)

        self.fallback = fallback
        self._fallback = self._reference if fallback == 'reference' else self.categories.uniform()
        self._fallback.setflags(write=False)

        logger.info("Built geography table (%s): %s", values,
                    ", ".join(f"{level}={len(self._levels[level][0])}" for level in RESOLUTIONS if level in self._levels))

    @staticmethod
    def _national_counts(table: pd.DataFrame, value_cols) -> np.ndarray:
        unstratified = table[(table['age'] == '') & (table['sex'] == '')]
        for level in RESOLUTIONS:
            rows = unstratified[unstratified['level'] == level]
            if not rows.empty:
                return rows[value_cols].to_numpy(dtype=float).sum(axis=0)
        return np.zeros(len(value_cols))

    def _marginalize_strata(self, table: pd.DataFrame, value_cols) -> pd.DataFrame:
        if not self.stratum_columns:
            return table
        full = np.ones(len(table), dtype=bool)
        for c in self.stratum_columns:
            full &= (table[c] != '').to_numpy()
        detailed = table[full]
        if detailed.empty:
            return table

        derived = []
        margins = [('age',), ('sex',), ()] if len(self.stratum_columns) == 2 else [()]
        for keep in margins:
            keep = [c for c in keep if c in self.stratum_columns]
            grouped = detailed.groupby(['geoid', 'level'] + keep, sort=False)[value_cols].sum().reset_index()
            for c in ('age', 'sex'):
                if c not in keep:
                    grouped[c] = ''
            derived.append(grouped)
        derived = pd.concat(derived, ignore_index=True)

        # rows listed in the source take precedence over derived margins
        combined = pd.concat([table, derived], ignore_index=True)
        return combined.drop_duplicates(subset=['geoid', 'age', 'sex'], keep='first').reset_index(drop=True)

    @staticmethod
    def _roll_up(table: pd.DataFrame, value_cols) -> pd.DataFrame:
        present = [level for level in RESOLUTIONS if (table['level'] == level).any()]
        if not present:
            return table
        finest = RESOLUTIONS.index(present[-1])

        # walk from the finest level towards the state, each level summing the one below it
        for i in range(finest - 1, -1, -1):
            level, finer = RESOLUTIONS[i], RESOLUTIONS[i + 1]
            rows = table[table['level'] == finer]
            if rows.empty:
                continue
            rolled = rows.assign(geoid=rows['geoid'].str[:GEOID_LENGTHS[level]], level=level)
            rolled = rolled.groupby(['geoid', 'level', 'age', 'sex'], sort=False)[value_cols].sum().reset_index()
            table = pd.concat([table, rolled], ignore_index=True)
            table = table.drop_duplicates(subset=['geoid', 'age', 'sex'], keep='first').reset_index(drop=True)
        return table

    @property
    def reference(self) -> np.ndarray:
        return self._reference

    @property
    def fallback_distribution(self) -> np.ndarray:
        return self._fallback

    @property
    def resolutions(self):
        return [level for level in RESOLUTIONS if level in self._levels]

    def __len__(self) -> int:
        return sum(len(index) for index, _ in self._levels.values())

    def lookup(self, geoid, resolution: str = 'block', stratum=None) -> GeographyComposition:
        """``stratum`` is an optional ``{'age': ..., 'sex': ...}`` mapping."""
        stratum = stratum or {}
        match = self.lookup_many(
            pd.Series([geoid], dtype=object), resolution,
            ages=pd.Series([stratum.get('age')], dtype=object) if 'age' in stratum else None,
            sexes=pd.Series([stratum.get('sex')], dtype=object) if 'sex' in stratum else None)
        return GeographyComposition(
            geoid=geoid if isinstance(geoid, str) else None,
            requested_resolution=resolution,
            resolution=match.levels[0],
            proportions=match.proportions[0],
            categories=self.categories,
            matched=bool(match.matched[0]),
            stratum=match.strata[0])

    def lookup_many(self, geoids: pd.Series, resolution: str = 'block', ages=None, sexes=None) -> GeographyMatch:
        """
        Vectorized lookup of normalized GEOIDs (see ``normalize_geoid``). Each GEOID is
        tried at ``resolution`` (or its own resolution, if coarser) and then at every
        coarser resolution until a populated geography is found. Within a resolution
        the most specific covariate stratum available wins.
        """
        if resolution not in GEOID_LENGTHS:
            raise ConfigurationError(f"Unknown geography resolution '{resolution}'")
        n = len(geoids)
        codes = geoids.map(lambda g: g if isinstance(g, str) else '').to_numpy(dtype=object)
        lengths = np.array([len(g) for g in codes], dtype=int)

        age_values = ages.map(_stratum_value).to_numpy(dtype=object) if ages is not None else np.full(n, '', dtype=object)
        sex_values = sexes.map(_stratum_value).to_numpy(dtype=object) if sexes is not None else np.full(n, '', dtype=object)
        blank = np.full(n, '', dtype=object)
        tries = [(blank, blank)]
        if ages is not None and sexes is not None:
            tries = [(age_values, sex_values), (age_values, blank), (blank, sex_values)] + tries
        elif ages is not None:
            tries = [(age_values, blank)] + tries
        elif sexes is not None:
            tries = [(blank, sex_values)] + tries

        proportions = np.tile(self._fallback, (n, 1))
        matched = np.zeros(n, dtype=bool)
        levels = np.full(n, None, dtype=object)
        strata = np.full(n, '', dtype=object)

        start = RESOLUTIONS.index(resolution)
        for level in RESOLUTIONS[start::-1]:
            if level not in self._levels:
                continue
            index, values = self._levels[level]
            totals = self._totals[level]
            width = GEOID_LENGTHS[level]
            keys = np.array([g[:width] for g in codes], dtype=object)
            for age_try, sex_try in tries:
                pending = ~matched & (lengths >= width)
                if not pending.any():
                    break
                lookup = pd.MultiIndex.from_arrays([keys[pending], age_try[pending], sex_try[pending]])
                positions = np.full(n, -1)
                positions[pending] = index.get_indexer(lookup)
                found = positions >= 0
                found[found] = totals[positions[found]] > 0

                proportions[found] = values[positions[found]]
                matched |= found
                levels[found] = level
                strata[found] = [_stratum_label(a, s) for a, s in zip(age_try[found], sex_try[found])]

        return GeographyMatch(proportions=proportions, matched=matched, levels=levels, strata=strata)

    @classmethod
    def from_census(cls, census_data, id_column: str, categories: Optional[RaceCategories] = None,
                    census_map=None, **kwargs):
        """
        Build the table from a census race-count file (``NH_White_alone``,
        ``NH_Black_alone``, ``NH_API_alone``, ``NH_AIAN_alone``, ``NH_Mult_Total``,
        ``NH_Other_alone``, ``Hispanic_Total``, ``Total_Pop``) keyed by the GEOID column
        ``id_column``. Puerto Rico is dropped to match the population covered by the
        census surname list, and the Non-Hispanic Other population is redistributed
        proportionally over the remaining Non-Hispanic groups within each geography.
        """
        census_map = census_map if census_map is not None else CENSUS_GEOGRAPHY_MAP
        df = input_to_dataframe(census_data, [id_column]).copy()
        df[id_column] = df[id_column].astype(str)

        # Step 1: retain the contiguous U.S., Alaska, and Hawaii
        if 'State_FIPS20' in df.columns:
            puerto_rico = df['State_FIPS20'].astype(str).str.zfill(2) == '72'
        else:
            puerto_rico = df[id_column].str.startswith('72')
        if puerto_rico.any():
            logger.info("Dropping %d Puerto Rico geographies", int(puerto_rico.sum()))
        df = df[~puerto_rico].copy()

        # Step 2: fold the "Other" combinations into the identified race (Word 2008)
        if all(x + '_Other' in df.columns for x in ['NH_White', 'NH_Black', 'NH_AIAN', 'NH_API']):
            for x in ['NH_White', 'NH_Black', 'NH_AIAN', 'NH_API']:
                df[x + '_alone'] = df[x + '_alone'] + df[x + '_Other']
            df['NH_API_alone'] = df['NH_API_alone'] + df['NH_Asian_HPI'] + df['NH_Asian_HPI_Other']
            for x in ['NH_White_Other', 'NH_Black_Other', 'NH_AIAN_Other', 'NH_Asian_HPI', 'NH_API_Other', 'NH_Asian_HPI_Other']:
                df['NH_Mult_Total'] = df['NH_Mult_Total'] - df[x]

        if 'Non_Hispanic_Total' not in df.columns:
            df['Non_Hispanic_Total'] = df['Total_Pop'] - df['Hispanic_Total']

        # Step 3: redistribute Non-Hispanic Other to the remaining Non-Hispanic groups
        remaining = (df["Total_Pop"] - df["Hispanic_Total"] - df["NH_Other_alone"]).astype(float)
        for x in ['NH_White_alone', 'NH_Black_alone', 'NH_API_alone', 'NH_AIAN_alone', 'NH_Mult_Total']:
            with np.errstate(divide='ignore', invalid='ignore'):
                share = df[x] + (df[x] / remaining) * df["NH_Other_alone"]
            share = np.where(df["Total_Pop"] == 0, 0, share)
            share = np.where(df["Non_Hispanic_Total"] == df["NH_Other_alone"], df["NH_Other_alone"] / 5, share)
            df[x] = share

        pop_check = df[["NH_White_alone", "NH_Black_alone", "NH_AIAN_alone",
                        "NH_API_alone", "NH_Mult_Total", "Hispanic_Total"]].sum(axis=1)
        mismatch = pop_check.astype(float).round(2) != df['Total_Pop'].astype(float).round(2)
        if mismatch.any():
            raise MalformedTableError(
                f"Census race counts do not add up to Total_Pop for {int(mismatch.sum())} geographies, "
                f"e.g. {list(df.loc[mismatch, id_column][:5])}")

        table = pd.DataFrame({'geoid': df[id_column].to_numpy(dtype=object)})
        for category, columns in census_map.items():
            table[category] = df[columns].sum(axis=1).to_numpy(dtype=float)
        return cls(table, categories=categories, values='counts', geoid_column_name='geoid', **kwargs)


def _stratum_label(age, sex) -> str:
    parts = []
    if age:
        parts.append(f'age={age}')
    if sex:
        parts.append(f'sex={sex}')
    return '|'.join(parts)
