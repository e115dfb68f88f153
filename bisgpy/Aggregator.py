import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from .Config import STATISTICS
from .Records import AggregateResult, ConfigurationError, PosteriorResult, RaceCategories

logger = logging.getLogger(__name__)

TOTAL_KEY = 'ALL'


@dataclass(frozen=True, eq=False)
class GroupAccumulator:
    """
    Partial aggregate for one group: member count and per-category sums of the
    posteriors. Accumulators from different shards combine with ``merge``, which is
    associative and commutative, so a batch can be reduced in any order.
    """

    count: int
    sums: np.ndarray

    @classmethod
    def from_rows(cls, rows: np.ndarray) -> 'GroupAccumulator':
        rows = np.asarray(rows, dtype=float)
        # fsum is exactly rounded, which makes a single pass independent of row order
        sums = np.array([math.fsum(rows[:, j]) for j in range(rows.shape[1])])
        return cls(count=rows.shape[0], sums=sums)

    def merge(self, other: 'GroupAccumulator') -> 'GroupAccumulator':
        return GroupAccumulator(count=self.count + other.count, sums=self.sums + other.sums)

    def value(self, statistic: str) -> np.ndarray:
        if statistic == 'sum':
            return self.sums.copy()
        return self.sums / self.count


def _key_function(group_key_fn) -> Callable:
    if callable(group_key_fn):
        return group_key_fn
    if isinstance(group_key_fn, str):
        return lambda record: record.get(group_key_fn)
    raise TypeError("group_key_fn must be a callable or the name of a record field")


def _check_statistic(statistic: str) -> None:
    if statistic not in STATISTICS:
        raise ConfigurationError(f"Unknown statistic '{statistic}'; expected one of {list(STATISTICS)}")


class AggregationEngine:
    """
    Groups individual posteriors and summarizes each group per race category.

    ``mean`` estimates a group's racial composition, ``sum`` its expected headcount
    per category. Groups only exist if they have members; ``include_total`` adds a
    group keyed ``'ALL'`` covering every input. The same result can be built in one
    pass with ``aggregate`` or shard by shard with ``partial`` / ``merge`` / ``finalize``.
    """

    def __init__(self, categories: Optional[RaceCategories] = None) -> None:
        self.categories = categories

    def _categories_of(self, results) -> RaceCategories:
        if self.categories is not None:
            return self.categories
        if results:
            return results[0].categories
        return RaceCategories()

    def partial(self, results: Iterable[PosteriorResult], group_key_fn) -> Dict[object, GroupAccumulator]:
        """Map step: one accumulator per group key for a shard of results."""
        key_fn = _key_function(group_key_fn)
        results = list(results)
        if not results:
            return {}

        categories = self._categories_of(results)
        members: Dict[object, list] = {}
        for result in results:
            if result.categories != categories:
                raise ConfigurationError("Cannot aggregate posteriors over different race categories")
            key = key_fn(result.record if result.record is not None else result)
            members.setdefault(key, []).append(result.probabilities)

        return {key: GroupAccumulator.from_rows(np.vstack(rows)) for key, rows in members.items()}

    @staticmethod
    def merge(*partials: Dict[object, GroupAccumulator]) -> Dict[object, GroupAccumulator]:
        """Reduce step: combine shard accumulators key by key."""
        merged: Dict[object, GroupAccumulator] = {}
        for partial in partials:
            for key, accumulator in partial.items():
                merged[key] = merged[key].merge(accumulator) if key in merged else accumulator
        return merged

    def finalize(self, accumulators: Dict[object, GroupAccumulator], statistic: str = 'mean',
                 include_total: bool = False, categories: Optional[RaceCategories] = None
                 ) -> Dict[object, AggregateResult]:
        _check_statistic(statistic)
        categories = categories or self.categories or RaceCategories()

        groups = {key: acc for key, acc in accumulators.items() if acc.count > 0}
        if include_total and groups:
            if TOTAL_KEY in groups:
                raise ConfigurationError(f"Group key '{TOTAL_KEY}' clashes with the total group")
            total = GroupAccumulator(count=sum(acc.count for acc in groups.values()),
                                     sums=np.sum([acc.sums for acc in groups.values()], axis=0))
            groups[TOTAL_KEY] = total

        return {key: AggregateResult(key=key, statistic=statistic, count=acc.count,
                                     values=acc.value(statistic), categories=categories)
                for key, acc in groups.items()}

    def aggregate(self,
                  results: Iterable[PosteriorResult],
                  group_key_fn: Union[Callable, str],
                  statistic: str = 'mean',
                  include_total: bool = False
                  ) -> Dict[object, AggregateResult]:
        _check_statistic(statistic)
        results = list(results)
        categories = self._categories_of(results)
        accumulators = self.partial(results, group_key_fn)
        aggregated = self.finalize(accumulators, statistic, include_total=False, categories=categories)

        if include_total and results:
            if TOTAL_KEY in aggregated:
                raise ConfigurationError(f"Group key '{TOTAL_KEY}' clashes with the total group")
            total = GroupAccumulator.from_rows(np.vstack([r.probabilities for r in results]))
            aggregated[TOTAL_KEY] = AggregateResult(key=TOTAL_KEY, statistic=statistic, count=total.count,
                                                    values=total.value(statistic), categories=categories)

        logger.debug("Aggregated %d posteriors into %d groups (%s)", len(results), len(aggregated), statistic)
        return aggregated

    def aggregate_frame(self,
                        frame: pd.DataFrame,
                        by,
                        statistic: str = 'mean',
                        include_total: bool = False,
                        categories: Optional[RaceCategories] = None
                        ) -> pd.DataFrame:
        """
        Aggregate a posterior DataFrame (``pred.<abbr>`` columns) by one or more columns.
        Returns one row per group: the group key column(s), ``n``, and one column per
        race category holding the statistic.
        """
        _check_statistic(statistic)
        categories = categories or self.categories or RaceCategories()
        pred_columns = categories.pred_columns
        missing = [c for c in pred_columns if c not in frame.columns]
        if missing:
            raise KeyError(f"Posterior frame is missing columns {missing}")
        by = [by] if isinstance(by, str) else list(by)

        grouped = frame.groupby(by, sort=True, dropna=False)[pred_columns]
        summary = grouped.sum() if statistic == 'sum' else grouped.mean()
        summary.insert(0, 'n', grouped.size())
        summary = summary.reset_index()

        if include_total and len(frame):
            values = frame[pred_columns].sum() if statistic == 'sum' else frame[pred_columns].mean()
            total = {column: TOTAL_KEY for column in by}
            total.update({'n': len(frame), **values.to_dict()})
            summary = pd.concat([summary, pd.DataFrame([total])], ignore_index=True)
        return summary[by + ['n'] + pred_columns]
