import logging
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from .Config import BISGConfig, EvidenceMode
from .DataFrameUtils import normalize_geoid, normalize_rows
from .LookupTables import GeographyMatch, GeographyRaceTable, SurnameMatch, SurnamePriorTable
from .Records import (ConfigurationError, IndividualRecord, MalformedRecordError, PosteriorResult,
                      match_status)

logger = logging.getLogger(__name__)


class Evidence(NamedTuple):
    """Everything the strategies need about a batch, looked up once."""

    surname: SurnameMatch
    geography: GeographyMatch
    geography_present: np.ndarray
    reference: np.ndarray
    fallback: np.ndarray


class Resolution(NamedTuple):
    probabilities: np.ndarray
    applicable: np.ndarray
    ok: np.ndarray
    low_confidence: np.ndarray


class EstimationStrategy:
    """
    One link of the fallback chain. ``resolve`` reports, for every row, whether the
    strategy applies (``applicable``) and whether it produced a proper distribution
    (``ok``); the engine keeps the first ``ok`` answer per row.
    """

    name = None

    def __init__(self, require_match: bool = True) -> None:
        self.require_match = require_match

    def resolve(self, evidence: Evidence) -> Resolution:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(require_match={self.require_match})"


class JointStrategy(EstimationStrategy):
    name = 'joint'

    def resolve(self, evidence: Evidence) -> Resolution:
        surname, geography = evidence.surname, evidence.geography
        applicable = surname.matched & geography.matched

        # p(geo | race) is proportional to p(race | geo) / p(race); p(geo) cancels out
        likelihood = geography.proportions / evidence.reference
        posterior, ok = normalize_rows(surname.probabilities * likelihood)
        return Resolution(posterior, applicable, applicable & ok, np.zeros(len(ok), dtype=bool))


class GeographyOnlyStrategy(EstimationStrategy):
    name = 'geography_only'

    def resolve(self, evidence: Evidence) -> Resolution:
        geography = evidence.geography
        applicable = geography.matched if self.require_match else evidence.geography_present
        posterior, ok = normalize_rows(geography.proportions)
        return Resolution(posterior, applicable, applicable & ok, ~geography.matched)


class SurnameOnlyStrategy(EstimationStrategy):
    name = 'surname_only'

    def resolve(self, evidence: Evidence) -> Resolution:
        surname = evidence.surname
        applicable = surname.matched if self.require_match else surname.present
        posterior, ok = normalize_rows(surname.probabilities)
        return Resolution(posterior, applicable, applicable & ok, ~surname.matched)


class FallbackStrategy(EstimationStrategy):
    name = 'fallback'

    def resolve(self, evidence: Evidence) -> Resolution:
        n = len(evidence.geography_present)
        posterior = np.tile(evidence.fallback, (n, 1))
        everything = np.ones(n, dtype=bool)
        return Resolution(posterior, everything, everything, everything)


def strategy_chain(mode: EvidenceMode):
    """The ordered strategies tried for each evidence mode; the first one is the mode's own."""
    if mode == EvidenceMode.JOINT:
        return (JointStrategy(), GeographyOnlyStrategy(require_match=True),
                SurnameOnlyStrategy(require_match=True), FallbackStrategy())
    if mode == EvidenceMode.SURNAME_ONLY:
        return (SurnameOnlyStrategy(require_match=False), GeographyOnlyStrategy(require_match=True),
                FallbackStrategy())
    return (GeographyOnlyStrategy(require_match=False), SurnameOnlyStrategy(require_match=True),
            FallbackStrategy())


class BISGEngine:
    """
    Combines p(race | surname) and p(race | geography) into a posterior for each person
    following Elliott et al. (2009):

        u_r = p(r | surname) * p(geo | r),   p(geo | r) ~ p(r | geo) / p(r)
        posterior_r = u_r / sum(u)

    Estimation goes through a chain of strategies (see ``strategy_chain``). In joint
    mode a record whose surname is not in the surname table is scored from its
    geography alone and vice versa; when neither source matches, or every score is
    zero, the chain ends with the configured fallback distribution and the record is
    flagged low-confidence. Records missing a surname or carrying an unusable geography
    code are degraded to whatever evidence remains, or refused under
    ``on_bad_record='skip'``.

    The engine holds no per-batch state: the tables are read-only and the config is
    passed into every call, so one engine can serve concurrent batches.
    """

    def __init__(self,
                 surname_table: SurnamePriorTable,
                 geography_table: GeographyRaceTable,
                 config: Optional[BISGConfig] = None
                 ) -> None:

        if surname_table is None or geography_table is None:
            raise TypeError("BISGEngine expects both a SurnamePriorTable and a GeographyRaceTable")
        self.config = config if config is not None else BISGConfig(categories=surname_table.categories)
        self._check_categories(surname_table, geography_table, self.config)
        self.surname_table = surname_table
        self.geography_table = geography_table
        self.categories = self.config.categories

    @staticmethod
    def _check_categories(surname_table, geography_table, config):
        if surname_table.categories != geography_table.categories:
            raise ConfigurationError("Surname and geography tables use different race categories")
        if config.categories != surname_table.categories:
            raise ConfigurationError("Config race categories do not match the reference tables")

    def _config(self, config: Optional[BISGConfig], mode=None) -> BISGConfig:
        config = config if config is not None else self.config
        if config is not self.config:
            self._check_categories(self.surname_table, self.geography_table, config)
        if mode is not None:
            config = config.replace(mode=mode)
        return config

    def evidence(self, surnames: pd.Series, geoids: pd.Series, config: BISGConfig,
                 ages: Optional[pd.Series] = None, sexes: Optional[pd.Series] = None) -> Evidence:
        """
        Look up both reference tables for a batch. ``geoids`` must already be normalized.

        Rows that match neither table get the configured fallback distribution, so the
        single-source modes honour ``config.fallback`` too. The surname table's own
        fallback row (``ALL OTHER NAMES``) is the one exception and is kept.
        """
        surname = self.surname_table.lookup_many(surnames)
        if config.use_covariates:
            geography = self.geography_table.lookup_many(
                geoids, config.resolution,
                ages=ages if config.use_age else None,
                sexes=sexes if config.use_sex else None)
        else:
            geography = self.geography_table.lookup_many(geoids, config.resolution)
        geography_present = geoids.map(lambda g: isinstance(g, str)).to_numpy(dtype=bool)

        reference = self.geography_table.reference
        fallback = reference if config.fallback == 'reference' else self.categories.uniform()

        geography.proportions[~geography.matched] = fallback
        if self.surname_table.fallback_source != 'table':
            surname.probabilities[~surname.matched] = fallback
        return Evidence(surname, geography, geography_present, reference, fallback)

    def resolve(self, evidence: Evidence, config: BISGConfig) -> dict:
        """
        Run the strategy chain over a batch and return column arrays: ``probabilities``,
        ``method``, ``degraded``, ``low_confidence``, ``malformed``.
        """
        n = len(evidence.geography_present)
        k = len(self.categories)
        chain = strategy_chain(config.mode)

        surname_present = evidence.surname.present
        geography_present = evidence.geography_present
        if config.mode == EvidenceMode.JOINT:
            malformed = ~surname_present | ~geography_present
        elif config.mode == EvidenceMode.SURNAME_ONLY:
            malformed = ~surname_present
        else:
            malformed = ~geography_present

        probabilities = np.zeros((n, k))
        method = np.full(n, None, dtype=object)
        low_confidence = np.zeros(n, dtype=bool)
        resolved = np.zeros(n, dtype=bool)
        primary_failed = np.zeros(n, dtype=bool)

        for position, strategy in enumerate(chain):
            result = strategy.resolve(evidence)
            take = ~resolved & result.ok
            probabilities[take] = result.probabilities[take]
            method[take] = strategy.name
            low_confidence[take] = result.low_confidence[take]
            if position == 0:
                primary_failed = result.applicable & ~result.ok
            resolved |= take
            if resolved.all():
                break

        degraded = (method != chain[0].name) & (primary_failed | malformed)

        totals = probabilities.sum(axis=1)
        assert (probabilities >= 0).all() and (np.abs(totals - 1.0) <= config.epsilon).all(), \
            "Posterior probabilities are not normalized"

        if primary_failed.any():
            logger.debug("%d record(s) had zero %s scores and fell back", int(primary_failed.sum()), chain[0].name)

        return {
            'probabilities': probabilities,
            'method': method,
            'degraded': degraded,
            'low_confidence': low_confidence,
            'malformed': malformed,
        }

    def estimate_arrays(self, surnames: pd.Series, geoids: pd.Series, config: Optional[BISGConfig] = None,
                        ages: Optional[pd.Series] = None, sexes: Optional[pd.Series] = None):
        """Vectorized core shared by ``estimate`` and ``estimate_frame``."""
        config = self._config(config)
        evidence = self.evidence(surnames, geoids, config, ages=ages, sexes=sexes)
        columns = self.resolve(evidence, config)
        columns['surname_matched'] = evidence.surname.matched
        columns['geography_matched'] = evidence.geography.matched
        columns['geo_level'] = evidence.geography.levels
        columns['surname_present'] = evidence.surname.present
        columns['geography_present'] = evidence.geography_present
        return columns

    def estimate(self, record: IndividualRecord, mode=None, config: Optional[BISGConfig] = None) -> PosteriorResult:
        """Posterior for one person. ``mode`` overrides the evidence mode of the config."""
        config = self._config(config, mode)
        geoid = normalize_geoid(record.geoid)
        columns = self.estimate_arrays(
            pd.Series([record.surname], dtype=object),
            pd.Series([geoid if geoid is not False else None], dtype=object),
            config,
            ages=pd.Series([record.age], dtype=object),
            sexes=pd.Series([record.sex], dtype=object))

        if config.on_bad_record == 'skip' and columns['malformed'][0]:
            raise MalformedRecordError(
                f"Record {record.id!r}: {bad_record_reason(columns['surname_present'][0], geoid, config.mode)}")
        return self._result(record, columns, 0)

    def estimate_records(self, records, mode=None, config: Optional[BISGConfig] = None):
        """
        Posteriors for a sequence of records, computed in one vectorized pass.
        Under ``on_bad_record='skip'`` malformed records are left out.
        """
        config = self._config(config, mode)
        records = list(records)
        geoids = [normalize_geoid(r.geoid) for r in records]
        columns = self.estimate_arrays(
            pd.Series([r.surname for r in records], dtype=object),
            pd.Series([g if g is not False else None for g in geoids], dtype=object),
            config,
            ages=pd.Series([r.age for r in records], dtype=object),
            sexes=pd.Series([r.sex for r in records], dtype=object))

        results = []
        for i, record in enumerate(records):
            if config.on_bad_record == 'skip' and columns['malformed'][i]:
                logger.warning("Skipping record %r: %s", record.id,
                               bad_record_reason(columns['surname_present'][i], geoids[i], config.mode))
                continue
            results.append(self._result(record, columns, i))
        return results

    def _result(self, record: IndividualRecord, columns: dict, i: int) -> PosteriorResult:
        return PosteriorResult(
            id=record.id,
            probabilities=columns['probabilities'][i],
            categories=self.categories,
            surname_matched=bool(columns['surname_matched'][i]),
            geography_matched=bool(columns['geography_matched'][i]),
            method=columns['method'][i],
            geo_level=columns['geo_level'][i],
            degraded=bool(columns['degraded'][i]),
            low_confidence=bool(columns['low_confidence'][i]),
            record=record)

    def estimate_frame(self,
                       frame: pd.DataFrame,
                       id_column: str,
                       surname_column: Optional[str],
                       geoid_column: Optional[str],
                       age_column: Optional[str] = None,
                       sex_column: Optional[str] = None,
                       config: Optional[BISGConfig] = None,
                       return_match_flags: bool = False
                       ) -> pd.DataFrame:
        """
        Estimate a whole DataFrame. ``geoid_column`` holds raw GEOIDs; unparseable ones
        are treated as missing. Returns one row per input row (malformed rows included,
        flagged through ``malformed`` and ``reason`` so the caller can apply its own policy).
        """
        config = self._config(config)
        missing = pd.Series([None] * len(frame), index=frame.index, dtype=object)
        parsed = frame[geoid_column].map(normalize_geoid) if geoid_column else missing
        geoids = parsed.map(lambda g: g if isinstance(g, str) else None).astype(object)
        surnames = frame[surname_column].astype(object) if surname_column else missing

        columns = self.estimate_arrays(
            surnames, geoids, config,
            ages=frame[age_column].astype(object) if age_column else None,
            sexes=frame[sex_column].astype(object) if sex_column else None)

        output = pd.DataFrame(columns['probabilities'], columns=self.categories.pred_columns, index=frame.index)
        output.insert(0, id_column, frame[id_column].to_numpy())
        output['match_status'] = [match_status(s, g) for s, g in
                                  zip(columns['surname_matched'], columns['geography_matched'])]
        output['geo_level'] = pd.Series(columns['geo_level'], index=frame.index, dtype=object)
        output['method'] = pd.Series(columns['method'], index=frame.index, dtype=object)
        output['low_confidence'] = columns['low_confidence']
        output['degraded'] = columns['degraded']
        if return_match_flags:
            output['surname_matched'] = columns['surname_matched']
            output['geography_matched'] = columns['geography_matched']
        output['malformed'] = columns['malformed']
        output['reason'] = pd.Series([
            bad_record_reason(present, geoid, config.mode) if bad else None
            for bad, present, geoid in zip(columns['malformed'], columns['surname_present'], parsed)],
            index=frame.index, dtype=object)
        return output


def bad_record_reason(surname_present: bool, geoid, mode=EvidenceMode.JOINT) -> str:
    """``geoid`` is the result of ``normalize_geoid``: a string, None, or False."""
    problems = []
    if mode != EvidenceMode.GEOGRAPHY_ONLY and not surname_present:
        problems.append('missing surname')
    if mode != EvidenceMode.SURNAME_ONLY:
        if geoid is False:
            problems.append('unparseable geography code')
        elif geoid is None:
            problems.append('missing geography')
    return ', '.join(problems) or 'malformed record'
