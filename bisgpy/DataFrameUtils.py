import re
import unicodedata
import warnings

import numpy as np
import pandas as pd

from .Config import GEOID_LENGTHS
from .Records import MalformedTableError


def input_to_dataframe(dataframe, id_columns=None):
    if isinstance(dataframe, pd.DataFrame):
        return dataframe
    if not isinstance(dataframe, str):
        raise TypeError(
            "Error: Inputted dataframes must be of type str (path) or pd.DataFrame.")

    # see if there are columns that must be read in as strings
    if id_columns is None:
        id_columns = []
    elif isinstance(id_columns, str):
        id_columns = [id_columns]
    elif not isinstance(id_columns, list):
        raise TypeError(
            "ID Columns provided must be of either list or string type.")

    dtype_dict = {col: str for col in id_columns}

    if dataframe[-3:] == 'csv':
        return (pd.read_csv(dataframe, dtype=dtype_dict, keep_default_na=False, na_values=['']))
    elif dataframe[-3:] == 'dta':
        warnings.warn(
            '.dta data type supplied for input data. Make certain that geography codes are stored as str, otherwise lookups will fail.')
        return (pd.read_stata(dataframe))
    else:
        raise ValueError(
            "Error: Please provide input file path to a .csv or .dta file.")


def best_subname(lname: str, name_set):
    if pd.isna(lname):
        return lname

    if lname in name_set:
        return lname

    subnames = [subname for subname in re.split("[\\-\\–\\—\\−]+", lname) if subname]
    if len(subnames) == 0:
        return ''
    match_names = [subname for subname in subnames if subname in name_set]
    if len(match_names) > 0:
        return match_names[0]
    return subnames[0]


SUFFIXES = (" JR ", " SR ", " III ", " II ", " IV ", " DDS ", " MD ", " PHD ")


def clean_name(lname):
    """
    Normalize a raw surname the way the census surname list is keyed: upper case,
    letters only, no suffixes or stray initials, no internal spaces. Hyphens are
    kept so that compound names can be split by best_subname.
    """

    # do NOT coerce type if pandas recognizes it as missing
    if pd.isna(lname):
        return lname

    # fold accents (MUÑOZ -> MUNOZ) before dropping anything that is not a letter
    lname = unicodedata.normalize('NFKD', str(lname))
    lname = ''.join(ch for ch in lname if not unicodedata.combining(ch))

    # add in spaces for suffix matching
    lname = ' ' + lname.strip().upper() + ' '

    # punctuation and digits become spaces, apostrophes are handled after suffixes
    lname = re.sub(r"[^A-Z'\-\–\—\− ]", ' ', lname)

    for suffix in SUFFIXES:
        lname = lname.replace(suffix, ' ')

    # separate removal keeps O'LEARY and D'ANGELO intact as OLEARY and DANGELO
    lname = lname.replace("'", ' ')

    # lone letters are most likely initials, except O and D
    lname = re.sub(r' [A-CE-NP-Z](?= )', ' ', lname)
    lname = lname.strip()
    lname = re.sub(r'^[A-CE-NP-Z] ', ' ', lname)
    lname = re.sub(r' [A-CE-NP-Z]$', ' ', lname)

    # Last Step: Remove all spaces, no matter how long!
    return lname.replace(' ', '')


def normalize_geoid(value):
    """
    Return ``value`` as a census GEOID string, ``None`` when it is missing, or ``False``
    when it cannot be parsed (non-digits, or a length that is not a census level).
    """
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    geoid = str(value).strip()
    if geoid == '':
        return None
    if not geoid.isdigit() or len(geoid) not in GEOID_LENGTHS.values():
        return False
    return geoid


GEOID_COMPONENTS = (('state', 2), ('county', 3), ('tract', 6), ('block', 4))


def _component(value, width):
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if text == '':
        return None
    if not text.isdigit() or len(text) > width:
        return False
    return text.zfill(width)


def compose_geoid(state=None, county=None, tract=None, block=None, block_group=None):
    """
    Concatenate census geography components into a GEOID, stopping at the first
    missing component. ``block_group`` is only used when no block is given.
    Returns ``None`` when no state is given and ``False`` if a component is malformed.
    """
    values = {'state': state, 'county': county, 'tract': tract, 'block': block}
    geoid = ''
    for name, width in GEOID_COMPONENTS:
        part = _component(values[name], width)
        if part is False:
            return False
        if part is None:
            if name == 'block' and geoid and block_group is not None:
                part = _component(block_group, 1)
                if part is False:
                    return False
                if part is not None:
                    geoid += part
            break
        geoid += part
    return geoid or None


def geoid_column(frame: pd.DataFrame, geoid_column=None, component_columns=None) -> pd.Series:
    """
    Build one Series of normalized GEOIDs from either a single GEOID column or a
    mapping of component name (state/county/tract/block_group/block) to column.
    """
    if geoid_column is not None:
        return frame[geoid_column].map(normalize_geoid)
    if not component_columns:
        raise ValueError("Either a geoid column or geography component columns must be given")

    unknown = set(component_columns) - {'state', 'county', 'tract', 'block_group', 'block'}
    if unknown:
        raise ValueError(f"Unknown geography component(s): {sorted(unknown)}")

    parts = {name: frame[column] for name, column in component_columns.items()}
    return pd.Series(
        [compose_geoid(**dict(zip(parts.keys(), row))) for row in zip(*parts.values())],
        index=frame.index, dtype=object)


def check_distributions(values: np.ndarray, delta: float, keys=None, what='distribution') -> np.ndarray:
    """
    Validate rows of a reference table that should each be a probability
    distribution, and renormalize them to sum to exactly one.

    Rows summing outside ``1 +/- delta`` mean the source table is malformed, not that
    it carries rounding error, so they raise instead of being silently rescaled.
    """
    values = np.asarray(values, dtype=float)
    check_counts(values, keys, what)

    totals = values.sum(axis=1)
    bad = np.abs(totals - 1.0) > delta
    if bad.any():
        examples = _examples(keys, bad)
        raise MalformedTableError(
            f"{int(bad.sum())} {what} row(s) do not sum to 1 within {delta}: {examples}")
    return values / totals[:, None]


def check_counts(values: np.ndarray, keys=None, what='count') -> None:
    values = np.asarray(values, dtype=float)
    if not np.isfinite(values).all():
        rows = ~np.isfinite(values).all(axis=1)
        raise MalformedTableError(
            f"{what} table contains missing or non-finite values: {_examples(keys, rows)}")
    if (values < 0).any():
        rows = (values < 0).any(axis=1)
        raise MalformedTableError(
            f"{what} table contains negative values: {_examples(keys, rows)}")


def _examples(keys, mask, limit=5):
    if keys is None:
        return list(np.flatnonzero(mask)[:limit])
    return list(np.asarray(keys, dtype=object)[mask][:limit])


def normalize_rows(scores: np.ndarray):
    """
    Divide each row by its total. Rows with a zero (or non-finite) total are left as
    zeros and reported in the returned mask so the caller can fall back.
    """
    scores = np.asarray(scores, dtype=float)
    totals = scores.sum(axis=1)
    usable = np.isfinite(totals) & (totals > 0)
    out = np.zeros_like(scores)
    out[usable] = scores[usable] / totals[usable, None]
    return out, usable
