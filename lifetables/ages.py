"""
Age intervals.

A life table's rows are half-open intervals [age_start, age_end), contiguous
within each group and sorted ascending. The last interval of a complete table
is open-ended, age_end = inf.
"""

import math
from typing import List, Sequence

import numpy as np
import polars as pl

from lifetables.constants import AGE_END, AGE_START
from lifetables.errors import ConfigError
from lifetables.frames import check_columns, describe_rows, group_agg, over

AGG_AGE_START = "agg_age_start"
AGG_AGE_END = "agg_age_end"


def age_length() -> pl.Expr:
    return pl.col(AGE_END) - pl.col(AGE_START)


def is_terminal() -> pl.Expr:
    return pl.col(AGE_END).is_infinite()


def sort_by_age(df: pl.DataFrame, by: Sequence[str]) -> pl.DataFrame:
    return df.with_columns(pl.col(AGE_START, AGE_END).cast(pl.Float64)).sort(
        *by, AGE_START
    )


def age_interval_issues(
    df: pl.DataFrame,
    by: Sequence[str],
    *,
    require_terminal=False,
    require_zero_start=False,
) -> List[str]:
    """
    Every way in which the groups' intervals fail to be non-empty, unique,
    ascending and contiguous. Expects `df` already sorted by `sort_by_age`.
    """

    if df.select(pl.any_horizontal(pl.col(AGE_START, AGE_END).is_null().any())).item():
        return ["age columns contain missing values"]

    issues = []

    next_start = over(pl.col(AGE_START).shift(-1), by)
    flags = df.select(
        (pl.col(AGE_END) <= pl.col(AGE_START)).alias("empty"),
        (next_start.is_not_null() & (next_start != pl.col(AGE_END))).alias("gap"),
        pl.struct(*by, AGE_START).is_duplicated().alias("duplicate"),
    )

    problems = {
        "empty": "age_end must be greater than age_start",
        "duplicate": "duplicate age intervals within a group",
        "gap": "age intervals are not contiguous (gap or overlap after this row)",
    }
    for flag, message in problems.items():
        positions = flags[flag].arg_true().to_list()
        if positions:
            issues.append(f"{message}: {describe_rows(df, by, positions)}")

    if require_terminal or require_zero_start:
        ends = group_agg(
            df,
            by,
            pl.col(AGE_START).first().alias("first_start"),
            pl.col(AGE_END).last().alias("last_end"),
        )
        if require_zero_start and (ends["first_start"] != 0).any():
            issues.append("every group must start at age 0")
        if require_terminal and not ends["last_end"].is_infinite().all():
            issues.append(
                "every group must end with an open (age_end = inf) terminal interval"
            )
    return issues


def check_age_intervals(df: pl.DataFrame, by: Sequence[str], **requirements):
    """Raise `ConfigError` for the issues found by `age_interval_issues`."""
    issues = age_interval_issues(df, by, **requirements)
    if issues:
        raise ConfigError("; ".join(issues))


def map_age_groups(df: pl.DataFrame, age_mapping: pl.DataFrame) -> pl.DataFrame:
    """
    Attach the target interval [agg_age_start, agg_age_end) of `age_mapping`
    that contains each row of `df`.

    The mapping must partition exactly the age range of `df`, and its
    boundaries must be existing interval boundaries of `df`.
    """

    if not isinstance(age_mapping, pl.DataFrame):
        raise ConfigError("`age_mapping` must be a polars DataFrame")
    check_columns(age_mapping, (AGE_START, AGE_END), "age mapping")
    if age_mapping.height == 0:
        raise ConfigError("age mapping is empty")

    mapping = age_mapping.select(pl.col(AGE_START, AGE_END).cast(pl.Float64)).sort(
        AGE_START
    )
    starts = mapping[AGE_START].to_numpy()
    ends = mapping[AGE_END].to_numpy()
    if (ends <= starts).any() or (ends[:-1] > starts[1:]).any():
        raise ConfigError("age mapping intervals must be non-empty and non-overlapping")
    gaps = np.flatnonzero(ends[:-1] < starts[1:])
    if gaps.size:
        raise ConfigError(
            "age mapping has missing intervals between "
            + ", ".join(f"{ends[i]} and {starts[i + 1]}" for i in gaps)
        )

    boundaries = np.union1d(df[AGE_START].to_numpy(), df[AGE_END].to_numpy())
    lowest, highest = df[AGE_START].min(), df[AGE_END].max()
    split = np.setdiff1d(np.append(starts, ends[-1]), boundaries)
    if starts[0] != lowest or ends[-1] != highest or split.size:
        raise ConfigError(
            "age mapping and input table have missing intervals: the input covers "
            f"[{lowest}, {highest}), the mapping covers [{starts[0]}, {ends[-1]})"
            + (f" and splits input intervals at {split.tolist()}" if split.size else "")
        )

    index = np.searchsorted(starts, df[AGE_START].to_numpy(), side="right") - 1
    return df.with_columns(
        pl.Series(AGG_AGE_START, starts[index]),
        pl.Series(AGG_AGE_END, ends[index]),
    )


def abridged_age_mapping(terminal_age=110) -> pl.DataFrame:
    """0-1, 1-5, then 5-year groups up to an open interval at `terminal_age`."""
    starts = [0.0, 1.0, *map(float, range(5, terminal_age + 1, 5))]
    return pl.DataFrame({AGE_START: starts, AGE_END: [*starts[1:], math.inf]})


def single_year_age_mapping(terminal_age=110) -> pl.DataFrame:
    starts = [float(age) for age in range(terminal_age + 1)]
    return pl.DataFrame({AGE_START: starts, AGE_END: [*starts[1:], math.inf]})
