"""
Life table functions.

Expects one row per age interval per group, with columns "age_start" and
"age_end" (inf for the open terminal interval) and a mortality rate "mx", for
example
```python
┌──────────┬───────────┬─────────┬──────────┐
│ location ┆ age_start ┆ age_end ┆ mx       │
│ ---      ┆ ---       ┆ ---     ┆ ---      │
│ str      ┆ f64       ┆ f64     ┆ f64      │
╞══════════╪═══════════╪═════════╪══════════╡
│ Austria  ┆ 0.0       ┆ 1.0     ┆ 0.007859 │
│ Austria  ┆ 1.0       ┆ 5.0     ┆ 0.000402 │
│ Austria  ┆ 5.0       ┆ 10.0    ┆ 0.000196 │
│ …        ┆ …         ┆ …       ┆ …        │
│ Austria  ┆ 80.0      ┆ 85.0    ┆ 0.096047 │
│ Austria  ┆ 85.0      ┆ inf     ┆ 0.183546 │
└──────────┴───────────┴─────────┴──────────┘
```
`id_cols` names the columns identifying a row, age columns included; the rest
of them group rows into separate life tables.

Each `gen_*` function derives one parameter and returns a new frame sorted
by group and age. `lifetable` chains all of them.
"""

import logging
from typing import Iterable

import numpy as np
import polars as pl

from lifetables.ages import (
    age_length,
    check_age_intervals,
    is_terminal,
    sort_by_age,
)
from lifetables.ax import gen_u5_ax, iterate_ax
from lifetables.constants import (
    AGE_END,
    AGE_START,
    DEFAULT_AX_MAX_ITER,
    DEFAULT_AX_TOLERANCE,
    DEFAULT_RADIX,
    PARAMETER_COLUMNS,
)
from lifetables.conversions import mx_ax_to_qx, mx_to_ax
from lifetables.errors import ConfigError, DomainError
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
from lifetables.validate import validate_lifetable

logger = logging.getLogger(__name__)


def _prepare(dt: Frame, id_cols: Iterable[str], *required: str):
    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, [*id_cols, *required])
    by = group_columns(id_cols)
    return sort_by_age(df, by), by


def gen_lx_from_qx(
    dt: Frame, id_cols: Iterable[str], *, radix=DEFAULT_RADIX
) -> pl.DataFrame:
    df, by = _prepare(dt, id_cols, "qx")

    # probability of living to the start of the interval
    p = 1 - pl.col("qx")
    l = p.shift(1, fill_value=radix).cum_prod()

    return df.with_columns(over(l, by).alias("lx"))


def gen_qx_from_lx(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    df, by = _prepare(dt, id_cols, "lx")

    l = pl.col("lx")
    q = pl.when(is_terminal()).then(1.0).otherwise(1 - over(l.shift(-1), by) / l)

    return df.with_columns(q.alias("qx"))


def gen_dx_from_lx(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    """dx = l(x) - l(x + n); everyone left dies in the last interval of a group."""
    df, by = _prepare(dt, id_cols, "lx")

    l = pl.col("lx")
    d = l - over(l.shift(-1, fill_value=0.0), by)

    return df.with_columns(d.alias("dx"))


def gen_nLx(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    """
    Person-years lived in the interval: n * l(x + n) + ax * dx, and lx / mx for
    the open terminal interval.
    """
    df, by = _prepare(dt, id_cols, "lx", "dx", "ax")

    terminal = df.select(is_terminal()).to_series()
    if terminal.any():
        check_columns(df, ["mx"], "input table (terminal nLx needs mx)")
        immortal = df.select(is_terminal() & ~(pl.col("mx") > 0)).to_series()
        if immortal.any():
            raise DomainError(
                "terminal mx must be positive, otherwise life expectancy is "
                f"infinite: {describe_rows(df, by, immortal.arg_true().to_list())}",
                immortal.arg_true().to_list(),
            )

    l, d, a = pl.col("lx"), pl.col("dx"), pl.col("ax")
    L = (
        pl.when(is_terminal())
        .then(l / pl.col("mx") if "mx" in df.columns else None)
        .otherwise(age_length() * (l - d) + a * d)
    )

    return df.with_columns(L.alias("nLx"))


def gen_Tx(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    df, by = _prepare(dt, id_cols, "nLx")

    # person years remaining
    T = pl.col("nLx").cum_sum(reverse=True)

    return df.with_columns(over(T, by).alias("Tx"))


def gen_ex(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    df, _ = _prepare(dt, id_cols, "Tx", "lx")

    # life expectancy remaining
    e = pl.col("Tx") / pl.col("lx")

    return df.with_columns(e.alias("ex"))


def _initial_ax(df, id_cols, by, *, sex_col, u5_ax, tolerance, max_iter):
    mx = df["mx"].to_numpy()
    n = df.select(age_length()).to_series().to_numpy()

    # constant-mortality ax is undefined at mx = 0, where its limit is n / 2
    ax = convert_rows(df, by, mx_to_ax, np.where(mx == 0, 1.0, mx), n)
    df = df.with_columns(pl.Series("ax", np.where(mx == 0, n / 2, ax)))

    min_age = 0
    has_infant = df.select(
        ((pl.col(AGE_START) == 0) & (pl.col(AGE_END) == 1)).any()
    ).item()
    if u5_ax and sex_col in by and has_infant:
        df = gen_u5_ax(df, id_cols, sex_col=sex_col)
        has_child = df.select(
            ((pl.col(AGE_START) == 1) & (pl.col(AGE_END) == 5)).any()
        ).item()
        min_age = 5 if has_child else 1
    else:
        logger.debug("skipping under-5 ax, no %r grouping or no [0, 1) rows", sex_col)

    return iterate_ax(
        df, id_cols, tolerance=tolerance, max_iter=max_iter, min_age=min_age
    )


def lifetable(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    radix=DEFAULT_RADIX,
    sex_col="sex",
    u5_ax=True,
    tolerance: float = DEFAULT_AX_TOLERANCE,
    max_iter: int = DEFAULT_AX_MAX_ITER,
    validate=True,
) -> pl.DataFrame:
    """
    Complete life table from mx (or deaths and population), and optionally ax.

    Without ax, ax starts from the constant-mortality approximation, is
    replaced by the Coale-Demeny values for [0, 1) and [1, 5) when `sex_col`
    is one of the `id_cols` (and `u5_ax` is set), and is then refined with
    `iterate_ax`. The terminal interval gets qx = 1, and ax = ex.

    Returns a new frame sorted by group and age, with the parameter columns
    mx, ax, qx, px, lx, dx, nLx, Tx, ex after the input's other columns. The
    result is checked with `validate_lifetable` unless `validate` is False.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, id_cols, "input table (`id_cols`)")
    if "mx" not in df.columns:
        if not {"deaths", "population"} <= set(df.columns):
            raise ConfigError(
                "input table needs either an 'mx' column or 'deaths' and 'population'"
            )
        df = df.with_columns((pl.col("deaths") / pl.col("population")).alias("mx"))

    by = group_columns(id_cols)
    df = sort_by_age(df, by).with_columns(pl.col("mx").cast(pl.Float64))
    check_age_intervals(df, by, require_terminal=True)
    logger.debug("building life tables for %d row(s) grouped by %s", df.height, by)

    if "ax" not in df.columns:
        df = _initial_ax(
            df,
            id_cols,
            by,
            sex_col=sex_col,
            u5_ax=u5_ax,
            tolerance=tolerance,
            max_iter=max_iter,
        )

    qx = convert_rows(
        df,
        by,
        mx_ax_to_qx,
        df["mx"].to_numpy(),
        df["ax"].cast(pl.Float64).to_numpy(),
        df.select(age_length()).to_series().to_numpy(),
    )
    df = df.with_columns(pl.Series("qx", qx)).with_columns(
        (1 - pl.col("qx")).alias("px")
    )

    df = (
        df.pipe(gen_lx_from_qx, id_cols, radix=radix)
        .pipe(gen_dx_from_lx, id_cols)
        .pipe(gen_nLx, id_cols)
        .pipe(gen_Tx, id_cols)
        .pipe(gen_ex, id_cols)
        # the open interval's ax is its life expectancy
        .with_columns(
            pl.when(is_terminal())
            .then(pl.col("ex"))
            .otherwise(pl.col("ax"))
            .alias("ax")
        )
    )

    others = [col for col in df.columns if col not in PARAMETER_COLUMNS]
    df = df.select(*others, *PARAMETER_COLUMNS)

    if validate:
        validate_lifetable(df, id_cols, check_coverage=False)
    return df
