import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, NamedTuple, Optional

import numpy as np
import pandas as pd

from .Aggregator import AggregationEngine
from .Config import RESOLUTIONS, BISGConfig, EvidenceMode
from .DataFrameUtils import geoid_column as compose_geoid_column
from .DataFrameUtils import input_to_dataframe
from .LookupTables import GeographyRaceTable, SurnamePriorTable
from .RacePredictor import BISGEngine
from .Records import ConfigurationError, IndividualRecord, PosteriorResult

logger = logging.getLogger(__name__)

STATUS_COLUMNS = ['match_status', 'geo_level', 'method', 'low_confidence', 'degraded']


@dataclass(frozen=True)
class MatchReport:
    """Data-quality summary of one batch: how often each table matched and which fallbacks ran."""

    total: int
    estimated: int
    skipped: int
    surname_matched: int
    geography_matched: int
    low_confidence: int
    degraded: int
    by_method: Dict[str, int] = field(default_factory=dict)
    by_level: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def _rate(count, total):
        return count / total if total else float('nan')

    @property
    def surname_match_rate(self) -> float:
        return self._rate(self.surname_matched, self.estimated)

    @property
    def geography_match_rate(self) -> float:
        return self._rate(self.geography_matched, self.estimated)

    @property
    def low_confidence_rate(self) -> float:
        return self._rate(self.low_confidence, self.estimated)

    @classmethod
    def from_frame(cls, output: pd.DataFrame, total: int, skipped: int) -> 'MatchReport':
        levels = output['geo_level'].fillna('none').value_counts()
        return cls(
            total=total,
            estimated=len(output),
            skipped=skipped,
            surname_matched=int(output['match_status'].isin(['both', 'surname']).sum()),
            geography_matched=int(output['match_status'].isin(['both', 'geography']).sum()),
            low_confidence=int(output['low_confidence'].sum()),
            degraded=int(output['degraded'].sum()),
            by_method={str(k): int(v) for k, v in output['method'].value_counts().items()},
            by_level={str(k): int(v) for k, v in levels.items()})

    def log(self) -> None:
        logger.info(
            "BISG batch: %d records, %d estimated, %d skipped; surname match %.1f%%, geography match %.1f%%, "
            "low confidence %d, degraded %d; methods %s; geography levels %s",
            self.total, self.estimated, self.skipped,
            100 * self.surname_match_rate if self.estimated else 0.0,
            100 * self.geography_match_rate if self.estimated else 0.0,
            self.low_confidence, self.degraded, self.by_method, self.by_level)
        if self.skipped:
            logger.warning("%d record(s) were skipped as malformed", self.skipped)


class BatchResult(NamedTuple):
    posteriors: pd.DataFrame
    report: MatchReport
    errors: pd.DataFrame


class BISG:
    """
    The BISG (Bayesian Improved Surname Geocoding) class orchestrates the prediction of
    race probabilities from surname and geographic location for a whole batch.

    It binds the columns of an input table (a DataFrame or a .csv/.dta path) to the
    fields the engine needs, applies the missing-value policy, runs the BISGEngine over
    the rows (optionally in parallel chunks), and reports how many surnames and
    geographies matched and which fallbacks were used.

    The class uses the following components:
    - SurnamePriorTable and GeographyRaceTable: the immutable reference lookups.
    - BISGEngine: the per-record Bayesian combination and its fallback chain.
    - AggregationEngine: group-level summaries of the resulting posteriors.
    """

    def __init__(self,
                 surname_table: SurnamePriorTable,
                 geography_table: GeographyRaceTable,
                 config: Optional[BISGConfig] = None,
                 **options
                 ) -> None:

        if config is None:
            options.setdefault('categories', surname_table.categories)
            config = BISGConfig(**options)
        elif options:
            config = config.replace(**options)

        self.config = config
        self.engine = BISGEngine(surname_table, geography_table, config)
        self.aggregator = AggregationEngine(config.categories)

        finest = geography_table.resolutions[-1] if geography_table.resolutions else None
        if finest is not None and RESOLUTIONS.index(config.resolution) > RESOLUTIONS.index(finest):
            warnings.warn(
                f"Resolution '{config.resolution}' requested but the geography table is no finer than "
                f"'{finest}'. Lookups will start at '{finest}'.")

    @classmethod
    def from_census(cls, surname_data, geography_data, geography_id_column: str, config: Optional[BISGConfig] = None,
                    **options):
        """Build both reference tables from census source files (see the table ``from_census`` loaders)."""
        categories = config.categories if config is not None else options.get('categories')
        surname_table = SurnamePriorTable.from_census(surname_data, categories=categories)
        geography_table = GeographyRaceTable.from_census(geography_data, geography_id_column, categories=categories)
        return cls(surname_table, geography_table, config, **options)

    @property
    def categories(self):
        return self.config.categories

    def estimate(self, record: IndividualRecord, mode=None) -> PosteriorResult:
        return self.engine.estimate(record, mode=mode, config=self.config)

    # this fcn allows for 3 scenarios: given and present, given and absent, or not given
    @staticmethod
    def _add_row_id_column(input_data: pd.DataFrame, row_id_column: Optional[str]):
        if row_id_column is None:
            row_id_column = 'rownum'
            warnings.warn("No row_id_column passed. Creating a column 'rownum' for unique row id")
        if row_id_column in input_data.columns:
            if input_data[row_id_column].duplicated().any():
                raise ValueError(f"Row id column '{row_id_column}' contains duplicate ids")
            return input_data, row_id_column

        input_data = input_data.copy()
        input_data[row_id_column] = np.arange(input_data.shape[0]) + 1
        return input_data, row_id_column

    def predict(self,
                input_data,
                surname_column: Optional[str] = 'surname',
                row_id_column: Optional[str] = None,
                geoid_column: Optional[str] = None,
                state_column: Optional[str] = None,
                county_column: Optional[str] = None,
                tract_column: Optional[str] = None,
                block_group_column: Optional[str] = None,
                block_column: Optional[str] = None,
                age_column: Optional[str] = None,
                sex_column: Optional[str] = None,
                carry_columns=None,
                return_match_flags: bool = False,
                n_jobs: int = 1,
                chunk_size: Optional[int] = None,
                config: Optional[BISGConfig] = None
                ) -> BatchResult:
        """
        Estimate posteriors for every row of ``input_data``.

        Geography is given either as one GEOID column or as component columns
        (state, county, tract, block_group, block), at a consistent resolution across
        the batch. Returns a BatchResult holding the posterior DataFrame (``pred.<abbr>``
        columns plus status columns), the MatchReport, and the rows skipped as malformed
        (empty unless ``on_bad_record='skip'``).
        """
        config = config if config is not None else self.config

        # enforce types on parameters
        for name, value in [('surname_column', surname_column), ('row_id_column', row_id_column),
                            ('geoid_column', geoid_column), ('age_column', age_column), ('sex_column', sex_column)]:
            if value is not None and not isinstance(value, str):
                raise TypeError(f"{name} must be of type str")
        if not isinstance(return_match_flags, bool):
            raise TypeError("return_match_flags should be boolean value")
        if not isinstance(n_jobs, int) or n_jobs < 1:
            raise ValueError("n_jobs must be a positive integer")
        if chunk_size is not None and (not isinstance(chunk_size, int) or chunk_size < 1):
            raise ValueError("chunk_size must be a positive integer")

        components = {name: column for name, column in [
            ('state', state_column), ('county', county_column), ('tract', tract_column),
            ('block_group', block_group_column), ('block', block_column)] if column is not None}
        if geoid_column is not None and components:
            raise ValueError("Give either geoid_column or geography component columns, not both")
        if geoid_column is None and not components and config.mode != EvidenceMode.SURNAME_ONLY:
            raise ValueError(f"Evidence mode '{config.mode.value}' needs geoid_column or geography component columns")
        if surname_column is None and config.mode != EvidenceMode.GEOGRAPHY_ONLY:
            raise ValueError(f"Evidence mode '{config.mode.value}' needs a surname_column")
        if config.use_age and age_column is None:
            raise ConfigurationError("use_age is on but no age_column was given")
        if config.use_sex and sex_column is None:
            raise ConfigurationError("use_sex is on but no sex_column was given")

        # These are the columns that should be read in as str
        id_cols = [c for c in [surname_column, geoid_column] + list(components.values()) if c is not None]
        input_data = input_to_dataframe(input_data, id_cols)

        carry_columns = [carry_columns] if isinstance(carry_columns, str) else list(carry_columns or [])
        needed = id_cols + [c for c in [age_column, sex_column] if c is not None] + carry_columns
        missing = [c for c in needed if c not in input_data.columns]
        if missing:
            raise KeyError(f"Input data is missing columns {missing}")

        input_data, row_id_column = self._add_row_id_column(input_data, row_id_column)

        # carried columns are copied next to the output columns and must not replace them
        reserved = {row_id_column, 'surname_matched', 'geography_matched', 'malformed', 'reason',
                    *self.categories.pred_columns, *STATUS_COLUMNS}
        clashes = [c for c in carry_columns if c in reserved]
        if clashes:
            raise ValueError(f"carry_columns {clashes} clash with output columns of the same name")

        work = input_data
        if components:
            work = input_data.copy()
            geoid_column = '__geoid'
            work[geoid_column] = compose_geoid_column(input_data, component_columns=components)

        def run(chunk: pd.DataFrame) -> pd.DataFrame:
            return self.engine.estimate_frame(
                chunk, row_id_column, surname_column, geoid_column,
                age_column=age_column, sex_column=sex_column, config=config,
                return_match_flags=True)

        if chunk_size is None:
            chunk_size = len(work) if n_jobs == 1 else max(1, -(-len(work) // n_jobs))
        chunks = [work.iloc[start:start + chunk_size] for start in range(0, len(work), chunk_size)] or [work]

        if n_jobs > 1 and len(chunks) > 1:
            # map keeps chunk order, so rows come back in input order
            with ThreadPoolExecutor(max_workers=n_jobs) as executor:
                parts = list(executor.map(run, chunks))
        else:
            parts = [run(chunk) for chunk in chunks]
        output = pd.concat(parts)

        for column in carry_columns:
            output[column] = input_data[column].to_numpy()

        skip = config.on_bad_record == 'skip'
        bad = output['malformed'].to_numpy(dtype=bool) if skip else np.zeros(len(output), dtype=bool)
        errors = output.loc[bad, [row_id_column, 'reason']].reset_index(drop=True)
        output = output.loc[~bad]

        report = MatchReport.from_frame(output, total=len(input_data), skipped=int(bad.sum()))
        report.log()

        keep = [row_id_column] + self.categories.pred_columns + STATUS_COLUMNS
        if return_match_flags:
            keep += ['surname_matched', 'geography_matched']
        keep += [c for c in carry_columns if c not in keep]
        return BatchResult(posteriors=output[keep].reset_index(drop=True), report=report, errors=errors)

    def aggregate(self, posteriors, by, statistic: str = 'mean', include_total: bool = False) -> pd.DataFrame:
        """Group-level summary of a posterior DataFrame (or a BatchResult) by one or more columns."""
        if isinstance(posteriors, BatchResult):
            posteriors = posteriors.posteriors
        return self.aggregator.aggregate_frame(posteriors, by, statistic=statistic, include_total=include_total)
