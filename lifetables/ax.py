"""
Estimation of ax, the average number of years lived within an age interval by
those who die in it.

    gen_u5_ax:      Coale-Demeny regression on infant mortality for [0, 1) and [1, 5)
    gen_ax_from_dx: one refinement step from neighbouring dx values
    iterate_ax:     repeats that step until ax stops changing
"""

import logging
import warnings
from enum import Enum
from typing import Iterable, Iterator, Optional

import numpy as np
import polars as pl

from lifetables.ages import age_length, check_age_intervals, is_terminal, sort_by_age
from lifetables.constants import (
    AGE_END,
    AGE_START,
    COALE_DEMENY_U5_AX,
    DEFAULT_AX_MAX_ITER,
    DEFAULT_AX_TOLERANCE,
    INFANT_MX_THRESHOLD,
)
from lifetables.conversions import mx_ax_to_qx
from lifetables.errors import (
    ConfigError,
    ConvergenceWarning,
    UnsupportedCategoryError,
)
from lifetables.frames import (
    Frame,
    as_frame,
    check_columns,
    check_id_cols,
    convert_rows,
    describe_rows,
    group_columns,
    over,
)

logger = logging.getLogger(__name__)


class Sex(str, Enum):
    MALE = "male"
    FEMALE = "female"

    @classmethod
    def parse(cls, value) -> "Sex":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedCategoryError(
                f"no under-5 ax regression for sex {value!r}; "
                f"expected one of {[sex.value for sex in cls]}"
            ) from None


def gen_u5_ax(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    sex_col="sex",
) -> pl.DataFrame:
    """
    Fill ax for the [0, 1) and [1, 5) rows from the Coale-Demeny regression on
    infant mortality (mx at [0, 1)), by sex.

    Other rows keep their ax (null if the input had no ax column). Every group
    with a [1, 5) row needs a [0, 1) row to read infant mortality from.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, id_cols, "input table (`id_cols`)")
    check_columns(df, ["mx"])
    if sex_col not in id_cols:
        raise ConfigError(f"`id_cols` must include the sex column {sex_col!r}")
    by = group_columns(id_cols)

    infant = (pl.col(AGE_START) == 0) & (pl.col(AGE_END) == 1)
    child = (pl.col(AGE_START) == 1) & (pl.col(AGE_END) == 5)
    df = df.with_columns(
        over(pl.col("mx").filter(infant).first(), by).alias("_m0"),
    )

    orphans = df.select((child & pl.col("_m0").is_null()).arg_true()).to_series()
    if orphans.len():
        raise ConfigError(
            "age group [1, 5) present without [0, 1) to take infant mortality from: "
            + describe_rows(df, by, orphans.to_list())
        )

    u5_sexes = df.filter(infant | child)[sex_col].unique().to_list()
    sexes = {value: Sex.parse(value) for value in u5_sexes}

    m0 = pl.col("_m0")
    sex = pl.col(sex_col)
    branches = []
    for value, parsed in sexes.items():
        for (start, end), coef in COALE_DEMENY_U5_AX[parsed.value].items():
            interval = (pl.col(AGE_START) == start) & (pl.col(AGE_END) == end)
            row = (sex == value) & interval
            branches.append((row & (m0 >= INFANT_MX_THRESHOLD), pl.lit(coef["high"])))
            branches.append((row, coef["intercept"] + coef["slope"] * m0))

    expr = None
    for condition, value in branches:
        if expr is None:
            expr = pl.when(condition).then(value)
        else:
            expr = expr.when(condition).then(value)

    fallback = pl.col("ax") if "ax" in df.columns else pl.lit(None, dtype=pl.Float64)
    ax = fallback if expr is None else expr.otherwise(fallback)
    return df.with_columns(ax.cast(pl.Float64).alias("ax")).drop("_m0")


def gen_ax_from_dx(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    min_age: float = 0,
) -> pl.DataFrame:
    """
    One refinement of ax from the dx of the neighbouring intervals:

        ax = (-n/24 dx[x-1] + n/2 dx[x] + n/24 dx[x+1]) / dx[x]

    Only rows with both neighbours in their group, below the terminal interval
    and starting at or above `min_age` are refined. Estimates falling outside
    [0, n] are discarded in favour of the current ax. Needs `dx` and `ax`.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, [*id_cols, "ax", "dx"])
    by = group_columns(id_cols)
    df = sort_by_age(df, by)

    n = age_length()
    dx = pl.col("dx")
    prev_dx, next_dx = over(dx.shift(1), by), over(dx.shift(-1), by)
    refined = (-n / 24 * prev_dx + n / 2 * dx + n / 24 * next_dx) / dx

    eligible = (
        prev_dx.is_not_null()
        & next_dx.is_not_null()
        & ~is_terminal()
        & (pl.col(AGE_START) >= min_age)
        & (dx > 0)
    )
    within = refined.is_finite() & (refined >= 0) & (refined <= n)
    return df.with_columns(
        pl.when(eligible & within).then(refined).otherwise(pl.col("ax")).alias("ax")
    )


def _dx(df: pl.DataFrame, by) -> pl.DataFrame:
    qx = convert_rows(
        df,
        by,
        mx_ax_to_qx,
        df["mx"].to_numpy(),
        df["ax"].to_numpy(),
        df.select(age_length()).to_series().to_numpy(),
    )
    px = 1 - pl.col("qx")
    l = over(px.shift(1, fill_value=1.0).cum_prod(), by)
    return df.with_columns(pl.Series("qx", qx)).with_columns(
        (l * pl.col("qx")).alias("dx")
    )


def ax_iterations(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    min_age: float = 0,
) -> Iterator[tuple]:
    """
    Yield `(table, max_change)` for successive ax refinements, forever.

    Each round re-derives qx and dx from mx and the current ax, then applies
    `gen_ax_from_dx`. The input must have `mx` and `ax`; missing ax values
    start at n / 2.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, [*id_cols, "mx"])
    by = group_columns(id_cols)
    df = sort_by_age(df, by)
    check_age_intervals(df, by)

    start = age_length() / 2
    if "ax" in df.columns:
        start = pl.col("ax").fill_null(start)
    df = df.with_columns(start.cast(pl.Float64).alias("ax"))

    while True:
        refined = gen_ax_from_dx(_dx(df, by), id_cols, min_age=min_age)
        # inf - inf on open intervals is NaN; those rows never change
        change = (refined["ax"] - df["ax"]).abs().fill_nan(0.0).max()
        df = df.with_columns(refined["ax"])
        yield df, (change if change is not None else 0.0)


def iterate_ax(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    tolerance: float = DEFAULT_AX_TOLERANCE,
    max_iter: int = DEFAULT_AX_MAX_ITER,
    min_age: float = 0,
    ax: Optional[Iterable[float]] = None,
) -> pl.DataFrame:
    """
    Refine ax to a fixed point of `gen_ax_from_dx`.

    Starts from the `ax` argument if given, else the table's ax column, else
    n / 2. Stops once the largest absolute change across all rows is below
    `tolerance`. Hitting `max_iter` first emits a `ConvergenceWarning` and
    returns the last iterate. Rows below `min_age`, the first and last row of
    each group and the terminal row keep their starting ax.
    """

    df = as_frame(dt)
    if ax is not None:
        df = df.with_columns(pl.Series("ax", np.asarray(list(ax), dtype=float)))

    if max_iter < 1:
        raise ConfigError("`max_iter` must be at least 1")

    iterations = ax_iterations(df, id_cols, min_age=min_age)
    for iteration in range(1, max_iter + 1):
        df, change = next(iterations)
        if change < tolerance:
            logger.info(
                "ax converged after %d iteration(s), max change %.3g",
                iteration,
                change,
            )
            return df

    message = (
        f"ax did not converge within {max_iter} iteration(s); "
        f"last max change {change:.3g} exceeds tolerance {tolerance:.3g}"
    )
    logger.warning(message)
    warnings.warn(message, ConvergenceWarning, stacklevel=2)
    return df
