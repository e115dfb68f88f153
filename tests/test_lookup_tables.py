"""Tests for the surname and geography reference tables."""

import numpy as np
import pandas as pd
import pytest

from bisgpy import (ConfigurationError, GeographyRaceTable, MalformedTableError, RaceCategories,
                    SurnamePriorTable, UnknownCategoryError)

from conftest import GEOGRAPHY_PROPORTIONS, LABELS, REFERENCE, SURNAMES, frame_from


# ---------------------------------------------------------------------------
# Surname table


def test_surname_lookup_normalizes_raw_spelling(surname_table) -> None:
    match = surname_table.lookup("  washington jr. ")
    assert match.matched
    assert match.surname == "WASHINGTON"
    assert match.as_dict()["Black"] == pytest.approx(0.90)


def test_surname_lookup_falls_back_to_all_other_names(surname_table) -> None:
    match = surname_table.lookup("Zzyzx")
    assert not match.matched
    np.testing.assert_allclose(match.probabilities, [0.5, 0.2, 0.2, 0.05, 0.05])
    assert surname_table.fallback_source == "table"
    assert "ALLOTHERNAMES" not in surname_table.to_frame()["surname"].tolist()


def test_surname_lookup_uses_known_part_of_hyphenated_name(surname_table) -> None:
    match = surname_table.lookup("Lopez-Garcia")
    assert match.matched
    assert match.surname == "GARCIA"


def test_surname_probabilities_are_read_only(surname_table) -> None:
    match = surname_table.lookup("Smith")
    with pytest.raises(ValueError):
        match.probabilities[0] = 1.0


def test_surname_lookup_many_flags_missing(surname_table) -> None:
    result = surname_table.lookup_many(pd.Series(["Smith", None, "", "Nobody"], dtype=object))
    assert list(result.present) == [True, False, False, True]
    assert list(result.matched) == [True, False, False, False]
    np.testing.assert_allclose(result.probabilities.sum(axis=1), 1.0)


def test_surname_contains(surname_table) -> None:
    assert "garcia" in surname_table
    assert "Nobody" not in surname_table
    assert None not in surname_table


def test_surname_table_without_fallback_row() -> None:
    names = {k: v for k, v in SURNAMES.items() if k != "ALL OTHER NAMES"}
    uniform = SurnamePriorTable(names)
    np.testing.assert_allclose(uniform.fallback_distribution, [0.2] * 5)

    reference = SurnamePriorTable(names, fallback="reference", reference=REFERENCE)
    np.testing.assert_allclose(reference.fallback_distribution, [0.6, 0.13, 0.18, 0.06, 0.03])

    with pytest.raises(ConfigurationError):
        SurnamePriorTable(names, fallback="reference")


def test_surname_table_rejects_malformed_rows() -> None:
    with pytest.raises(MalformedTableError, match="do not sum to 1"):
        SurnamePriorTable({"SMITH": {"White": 0.5, "Black": 0.1, "Hispanic": 0.1, "Asian": 0.1, "Other": 0.1}})
    with pytest.raises(MalformedTableError, match="negative"):
        SurnamePriorTable({"SMITH": {"White": 1.1, "Black": -0.1, "Hispanic": 0, "Asian": 0, "Other": 0}})
    with pytest.raises(MalformedTableError, match="no column"):
        SurnamePriorTable({"SMITH": {"White": 1.0}})


def test_surname_table_rejects_unknown_category() -> None:
    with pytest.raises(UnknownCategoryError):
        SurnamePriorTable({"SMITH": {"White": 0.9, "Martian": 0.1}})


def test_surname_table_rejects_duplicates_after_cleaning() -> None:
    frame = pd.DataFrame([{"surname": name, **dict(zip(LABELS, [0.2] * 5))} for name in ["Smith", "SMITH "]])
    with pytest.raises(MalformedTableError, match="duplicate"):
        SurnamePriorTable(frame)


def test_surname_table_reads_prediction_style_columns() -> None:
    frame = pd.DataFrame({"name": ["SMITH"], "pred.whi": [0.7], "pred.bla": [0.2], "pred.his": [0.05],
                          "pred.asi": [0.03], "pred.oth": [0.02]})
    table = SurnamePriorTable(frame, surname_column="name")
    assert table.lookup("smith").matched


def test_surname_table_custom_categories() -> None:
    categories = RaceCategories([("Group A", "a"), ("Group B", "b")])
    table = SurnamePriorTable({"SMITH": {"a": 0.25, "b": 0.75}}, categories=categories)
    assert table.lookup("Smith").as_dict() == {"Group A": 0.25, "Group B": 0.75}


def test_surname_table_from_census_redistributes_suppressed_cells() -> None:
    census = pd.DataFrame({
        "name": ["SMITH", "ALL OTHER NAMES"],
        "count": [100, 1000],
        "pctwhite": ["70", "50"],
        "pctblack": ["23", "20"],
        "pctapi": ["(S)", "5"],
        "pctaian": ["(S)", "2"],
        "pct2prace": ["2", "3"],
        "pcthispanic": ["3", "20"],
    })
    table = SurnamePriorTable.from_census(census)
    smith = table.lookup("Smith").as_dict()
    assert smith["White"] == pytest.approx(0.70)
    assert smith["Asian"] == pytest.approx(0.01)
    assert smith["Other"] == pytest.approx(0.03)
    np.testing.assert_allclose(table.fallback_distribution, [0.5, 0.2, 0.2, 0.05, 0.05])


def test_surname_table_from_census_prefers_earlier_sources() -> None:
    columns = ["name", "count", "pctwhite", "pctblack", "pctapi", "pctaian", "pct2prace", "pcthispanic"]
    first = pd.DataFrame([["SMITH", 10, 100, 0, 0, 0, 0, 0]], columns=columns)
    second = pd.DataFrame([["SMITH", 10, 0, 100, 0, 0, 0, 0], ["JONES", 10, 0, 0, 0, 0, 0, 100]], columns=columns)
    table = SurnamePriorTable.from_census([first, second])
    assert table.lookup("Smith").as_dict()["White"] == 1.0
    assert table.lookup("Jones").as_dict()["Hispanic"] == 1.0


# ---------------------------------------------------------------------------
# Geography table


def test_geography_lookup_at_requested_resolution(geography_table) -> None:
    composition = geography_table.lookup("01001000100", "tract")
    assert composition.matched
    assert composition.resolution == "tract"
    assert not composition.escalated
    np.testing.assert_allclose(composition.proportions, GEOGRAPHY_PROPORTIONS["01001000100"])


def test_geography_lookup_escalates_to_coarser_level(geography_table) -> None:
    composition = geography_table.lookup("01001000300", "tract")
    assert composition.matched
    assert composition.resolution == "county"
    assert composition.escalated
    np.testing.assert_allclose(composition.proportions, GEOGRAPHY_PROPORTIONS["01001"])

    state = geography_table.lookup("02001000100", "tract")
    assert not state.matched
    assert state.resolution is None
    np.testing.assert_allclose(state.proportions, geography_table.reference)


def test_geography_lookup_truncates_finer_geoid(geography_table) -> None:
    composition = geography_table.lookup("010010001001000", "county")
    assert composition.resolution == "county"
    np.testing.assert_allclose(composition.proportions, GEOGRAPHY_PROPORTIONS["01001"])


def test_geography_lookup_rejects_unknown_resolution(geography_table) -> None:
    with pytest.raises(ConfigurationError):
        geography_table.lookup("01001", "zip")


def test_geography_proportions_need_reference() -> None:
    with pytest.raises(MalformedTableError, match="reference"):
        GeographyRaceTable(frame_from(GEOGRAPHY_PROPORTIONS), values="proportions")


def test_geography_reference_must_be_positive() -> None:
    reference = dict(REFERENCE, Other=0.0, White=0.63)
    with pytest.raises(MalformedTableError, match="positive"):
        GeographyRaceTable(frame_from(GEOGRAPHY_PROPORTIONS), values="proportions", reference=reference)


def test_geography_rejects_bad_rows() -> None:
    with pytest.raises(MalformedTableError, match="GEOID"):
        GeographyRaceTable(frame_from({"ABC": (1, 1, 1, 1, 1)}))
    with pytest.raises(MalformedTableError, match="negative"):
        GeographyRaceTable(frame_from({"01001": (1, -1, 1, 1, 1)}))
    with pytest.raises(MalformedTableError, match="duplicate"):
        GeographyRaceTable(pd.concat([frame_from({"01001": (1, 1, 1, 1, 1)})] * 2, ignore_index=True))


def test_block_counts_roll_up(block_table) -> None:
    assert block_table.resolutions == ["state", "county", "tract", "block_group", "block"]
    np.testing.assert_allclose(block_table.lookup("010010001001", "block_group").proportions,
                               np.array([50, 40, 5, 3, 2]) / 100)
    np.testing.assert_allclose(block_table.lookup("01001000100", "tract").proportions,
                               np.array([60, 120, 10, 6, 4]) / 200)
    np.testing.assert_allclose(block_table.reference, np.array([150, 125, 13, 7, 5]) / 300)


def test_zero_population_block_escalates(block_table) -> None:
    composition = block_table.lookup("010010001001001", "block")
    assert composition.matched
    assert composition.resolution == "block_group"
    np.testing.assert_allclose(composition.proportions, [0.5, 0.4, 0.05, 0.03, 0.02])


def test_geography_from_components(tmp_path) -> None:
    path = tmp_path / "tracts.csv"
    path.write_text("state,county,tract,White,Black,Hispanic,Asian,Other\n"
                    "01,001,000100,60,20,10,5,5\n"
                    "01,003,000200,10,10,10,10,10\n")
    table = GeographyRaceTable(str(path))
    assert table.resolutions == ["state", "county", "tract"]
    np.testing.assert_allclose(table.lookup("01001000100", "tract").proportions, [0.6, 0.2, 0.1, 0.05, 0.05])
    np.testing.assert_allclose(table.lookup("01", "state").proportions, np.array([70, 30, 20, 15, 15]) / 150)


# ---------------------------------------------------------------------------
# Stratified compositions


def test_strata_full_stratum(strata_table) -> None:
    composition = strata_table.lookup("01001000100", "tract", {"age": "18-29", "sex": "F"})
    assert composition.stratum == "age=18-29|sex=F"
    np.testing.assert_allclose(composition.proportions, [0.2, 0.6, 0.1, 0.06, 0.04])


def test_strata_single_covariate_margin(strata_table) -> None:
    composition = strata_table.lookup("01001000100", "tract", {"age": "18-29"})
    assert composition.stratum == "age=18-29"
    np.testing.assert_allclose(composition.proportions, [0.3, 0.5, 0.1, 0.06, 0.04])


def test_strata_unstratified_margin(strata_table) -> None:
    composition = strata_table.lookup("01001000100", "tract")
    assert composition.stratum == ""
    np.testing.assert_allclose(composition.proportions, [0.5, 0.35, 0.07, 0.05, 0.03])


def test_strata_unknown_value_uses_less_specific_stratum(strata_table) -> None:
    by_sex = strata_table.lookup("01001000100", "tract", {"age": "65+", "sex": "F"})
    assert by_sex.stratum == "sex=F"
    np.testing.assert_allclose(by_sex.proportions, [0.5, 0.35, 0.07, 0.05, 0.03])

    unstratified = strata_table.lookup("01001000100", "tract", {"age": "65+"})
    assert unstratified.stratum == ""


def test_strata_roll_up_to_county(strata_table) -> None:
    composition = strata_table.lookup("01001", "county", {"age": "30-44", "sex": "M"})
    assert composition.resolution == "county"
    np.testing.assert_allclose(composition.proportions, np.array([30, 15, 2, 2, 1]) / 50)


# ---------------------------------------------------------------------------
# Census loader


def test_geography_from_census_drops_puerto_rico_and_redistributes_other() -> None:
    census = pd.DataFrame({
        "GEOID": ["01001000100", "72001000100"],
        "NH_White_alone": [50, 10],
        "NH_Black_alone": [30, 10],
        "NH_API_alone": [5, 10],
        "NH_AIAN_alone": [2, 10],
        "NH_Mult_Total": [3, 10],
        "NH_Other_alone": [10, 10],
        "Hispanic_Total": [20, 10],
        "Total_Pop": [120, 70],
    })
    table = GeographyRaceTable.from_census(census, "GEOID")
    assert table.lookup("72001000100", "tract").matched is False

    composition = table.lookup("01001000100", "tract")
    # 90 non-Hispanic identified people absorb the 10 "Other" proportionally
    expected = np.array([50 + 50 / 9, 30 + 30 / 9, 20, 5 + 5 / 9, (2 + 3) * 10 / 9]) / 120
    np.testing.assert_allclose(composition.proportions, expected)


def test_geography_from_census_checks_totals() -> None:
    census = pd.DataFrame({
        "GEOID": ["01001"], "NH_White_alone": [50], "NH_Black_alone": [30], "NH_API_alone": [5],
        "NH_AIAN_alone": [2], "NH_Mult_Total": [3], "NH_Other_alone": [0], "Hispanic_Total": [20],
        "Total_Pop": [500],
    })
    with pytest.raises(MalformedTableError, match="Total_Pop"):
        GeographyRaceTable.from_census(census, "GEOID")
