import math

import numpy as np
import polars as pl
import pytest

from lifetables.ages import abridged_age_mapping, single_year_age_mapping


@pytest.fixture
def single_year_qx():
    """111 single-year rows for one location, qx = 0.2 and ax = 0.5 throughout."""
    return single_year_age_mapping(110).with_columns(
        pl.lit("Canada").alias("location"),
        pl.when(pl.col("age_end").is_infinite())
        .then(1.0)
        .otherwise(0.2)
        .alias("qx"),
        pl.lit(0.5).alias("ax"),
    )


@pytest.fixture
def qx_only():
    return pl.DataFrame(
        {
            "sex": ["female"] * 5 + ["male"] * 5,
            "age_start": [15, 20, 25, 30, 35] * 2,
            "age_end": [20, 25, 30, 35, 40] * 2,
            "qx": [0.1] * 5 + [0.2] * 5,
        }
    )


def gompertz_mx(sex: str, terminal_age=85) -> pl.DataFrame:
    """Abridged mx schedule: fixed under-5 rates, Gompertz from age 5 on."""
    ages = abridged_age_mapping(terminal_age)
    level = 1.0 if sex == "male" else 0.7
    starts = ages["age_start"].to_numpy()
    mx = level * 5e-5 * np.exp(0.09 * starts)
    mx[0] = level * 0.008
    mx[1] = level * 4e-4
    mx[-1] = level * 0.2
    return ages.with_columns(
        pl.lit("Austria").alias("location"),
        pl.lit(sex).alias("sex"),
        pl.Series("mx", mx),
    )


@pytest.fixture
def abridged_mx():
    return pl.concat([gompertz_mx("male"), gompertz_mx("female")])


@pytest.fixture
def id_cols():
    return ["location", "sex", "age_start", "age_end"]


@pytest.fixture
def two_row_table():
    """[0, 10) with mx 0.1 and ax 5, then [10, inf) with mx 0.2."""
    return pl.DataFrame(
        {
            "age_start": [0.0, 10.0],
            "age_end": [10.0, math.inf],
            "mx": [0.1, 0.2],
            "ax": [5.0, 5.0],
        }
    )
