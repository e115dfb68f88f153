from .Aggregator import AggregationEngine, GroupAccumulator
from .BISG import BISG, BatchResult, MatchReport
from .Config import BISGConfig, EvidenceMode
from .LookupTables import GeographyRaceTable, SurnamePriorTable
from .RacePredictor import BISGEngine
from .Records import (AggregateResult, BISGError, ConfigurationError, GeographyComposition, IndividualRecord,
                      MalformedRecordError, MalformedTableError, PosteriorResult, RaceCategories,
                      SurnameDistribution, UnknownCategoryError)


__all__ = [
    'AggregateResult', 'AggregationEngine', 'BISG', 'BISGConfig', 'BISGEngine', 'BISGError', 'BatchResult',
    'ConfigurationError', 'EvidenceMode', 'GeographyComposition', 'GeographyRaceTable', 'GroupAccumulator',
    'IndividualRecord', 'MalformedRecordError', 'MalformedTableError', 'MatchReport', 'PosteriorResult',
    'RaceCategories', 'SurnameDistribution', 'SurnamePriorTable', 'UnknownCategoryError',
]
