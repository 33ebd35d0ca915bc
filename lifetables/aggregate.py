"""
Moving life tables between age groupings.

`agg_lt` collapses fine intervals into coarser ones, `scale_qx` pushes coarse
probabilities back down onto fine intervals, and `gen_summary_lt` extracts the
usual summary measures (5q0, 45q15, e0).
"""

import logging
from typing import Iterable

import numpy as np
import polars as pl

from lifetables.ages import (
    AGG_AGE_END,
    AGG_AGE_START,
    age_length,
    check_age_intervals,
    is_terminal,
    map_age_groups,
    sort_by_age,
)
from lifetables.constants import (
    AGE_END,
    AGE_START,
    DERIVED_COLUMNS,
    SUMMARY_QX,
)
from lifetables.errors import ConfigError, DomainError
from lifetables.frames import (
    Frame,
    as_frame,
    check_columns,
    check_id_cols,
    check_unique,
    describe_rows,
    group_agg,
    group_columns,
    over,
)
from lifetables.validate import validate_lifetable

logger = logging.getLogger(__name__)


def _check_square(df: pl.DataFrame, by):
    """Every group must have the same set of age intervals."""
    if not by:
        return
    intervals = df.select(AGE_START, AGE_END).unique().height
    groups = df.select(by).unique().height
    per_group = df.group_by(by).len()["len"]
    if groups * intervals != df.height or (per_group != intervals).any():
        raise ConfigError(
            "every group must have the same age intervals "
            f"({groups} group(s), {intervals} distinct interval(s), {df.height} rows)"
        )


def _prepare_fine_table(dt, id_cols, *required):
    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, [*id_cols, *required])
    check_unique(df, id_cols)
    by = group_columns(id_cols)
    df = sort_by_age(df, by)
    check_age_intervals(df, by)
    _check_square(df, by)
    return df, by


def agg_lt(
    dt: Frame,
    id_cols: Iterable[str],
    age_mapping: pl.DataFrame,
    *,
    validate=True,
) -> pl.DataFrame:
    """
    Aggregate a life table to the coarser age groups of `age_mapping`.

    For each target interval [A, A + N):

        qx = 1 - prod(px)                     over the constituent intervals
        ax = (sum(nLx) - N * l(A + N)) / dx   with l(A) = 1 inside the target

    where nLx = n * l(x + n) + ax * dx per constituent interval (ax * dx for
    the open terminal one). ax is only produced when the input has an ax
    column; otherwise the result carries qx alone.

    The mapping must partition exactly the input's age range, on existing
    interval boundaries, or a `ConfigError` about missing intervals is raised.
    Returns one row per group and target interval, with the grouping columns,
    age_start, age_end, qx and (if available) ax.
    """

    df, by = _prepare_fine_table(dt, id_cols, "qx")
    with_ax = "ax" in df.columns
    df = map_age_groups(df, as_frame(age_mapping))
    key = [*by, AGG_AGE_START, AGG_AGE_END]
    logger.debug("aggregating %d row(s) into target age groups", df.height)

    # survivorship within each target interval, starting from 1
    q = pl.col("qx")
    p = 1 - q
    l = over(p.shift(1, fill_value=1.0).cum_prod(), key)

    aggs = [(1 - p.product()).alias("qx")]
    if with_ax:
        d = l * q
        a = pl.col("ax")
        L = pl.when(is_terminal()).then(a * d).otherwise(age_length() * l * p + a * d)
        df = df.with_columns(L.alias("nLx"))
        aggs += [pl.col("nLx").sum(), p.product().alias("l_end")]

    out = df.group_by(key, maintain_order=True).agg(*aggs)

    if with_ax:
        N = pl.col(AGG_AGE_END) - pl.col(AGG_AGE_START)
        a = (
            # zero-mortality limit
            pl.when(pl.col("qx") == 0)
            .then(N / 2)
            .when(pl.col(AGG_AGE_END).is_infinite())
            .then(pl.col("nLx") / pl.col("qx"))
            .otherwise((pl.col("nLx") - N * pl.col("l_end")) / pl.col("qx"))
        )
        out = out.with_columns(a.alias("ax"))

    out = (
        out.rename({AGG_AGE_START: AGE_START, AGG_AGE_END: AGE_END})
        .select(*by, AGE_START, AGE_END, "qx", *(["ax"] if with_ax else []))
        .sort(*by, AGE_START)
    )

    if validate:
        validate_lifetable(out, [*by, AGE_START, AGE_END], check_coverage=False)
    return out


def scale_qx(
    dt: Frame,
    target: pl.DataFrame,
    id_cols: Iterable[str],
) -> pl.DataFrame:
    """
    Rescale fine-interval qx to agree with coarser target qx.

    `target` holds the grouping columns, age_start, age_end and qx of the
    coarse intervals. Within each target interval every fine px is raised to
    the same power k = log(1 - q_target) / sum(log px), so that
    1 - prod(px ** k) equals the target qx. Open intervals are left at qx = 1.

    Returns a copy of `dt` with qx replaced. Columns derived from the old qx
    (mx, px, lx, dx, nLx, Tx, ex) are dropped; ax is kept.
    """

    df, by = _prepare_fine_table(dt, id_cols, "qx")
    target = as_frame(target)
    check_columns(target, [*by, AGE_START, AGE_END, "qx"], "target table")

    intervals = target.select(AGE_START, AGE_END).unique()
    df = map_age_groups(df, intervals)
    goal = target.select(
        *by,
        pl.col(AGE_START).cast(pl.Float64).alias(AGG_AGE_START),
        pl.col(AGE_END).cast(pl.Float64).alias(AGG_AGE_END),
        pl.col("qx").alias("target_qx"),
    )
    key = [*by, AGG_AGE_START, AGG_AGE_END]
    df = df.join(goal, on=key, how="left").sort(*by, AGE_START)

    unmatched = df["target_qx"].is_null().arg_true().to_list()
    if unmatched:
        raise ConfigError(f"no target qx for {describe_rows(df, by, unmatched)}")

    log_p = (1 - pl.col("qx")).log()
    closed = pl.col(AGG_AGE_END).is_finite()
    df = df.with_columns(
        over(log_p.sum(), key).alias("log_p_total"),
        (1 - pl.col("target_qx")).log().alias("log_target"),
    )

    target_q = pl.col("target_qx")
    impossible = closed & (
        (target_q < 0)
        | (target_q >= 1)
        | ((pl.col("log_p_total") == 0) & (target_q > 0))
        | pl.col("log_p_total").is_infinite()
    )
    bad = df.select(impossible).to_series().arg_true().to_list()
    if bad:
        raise DomainError(
            "cannot scale qx to the target (target qx outside [0, 1), or no "
            f"mortality to scale): {describe_rows(df, by, bad)}",
            bad,
        )

    k = pl.when(pl.col("log_p_total") == 0).then(1.0).otherwise(
        pl.col("log_target") / pl.col("log_p_total")
    )
    scaled = pl.when(closed).then(1 - (k * log_p).exp()).otherwise(pl.col("qx"))

    drop = [
        col
        for col in (*DERIVED_COLUMNS, AGG_AGE_START, AGG_AGE_END)
        if col in df.columns
    ]
    return df.with_columns(scaled.alias("qx")).drop(
        *drop, "target_qx", "log_p_total", "log_target"
    )


def gen_summary_lt(dt: Frame, id_cols: Iterable[str]) -> pl.DataFrame:
    """
    Summary measures per group: 5q0 and 45q15 as compound probabilities of
    dying over [0, 5) and [15, 60), and e0 when the table has ex.

    Each summary interval must be made up of whole intervals of the table.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    check_columns(df, [*id_cols, "qx"])
    check_unique(df, id_cols)
    by = group_columns(id_cols)
    df = sort_by_age(df, by)
    check_age_intervals(df, by)

    aggs = []
    for label, start, end in SUMMARY_QX:
        within = (pl.col(AGE_START) >= start) & (pl.col(AGE_END) <= end)
        aggs += [
            (1 - (1 - pl.col("qx")).filter(within).product()).alias(label),
            age_length().filter(within).sum().alias(f"_{label}_years"),
        ]
    if "ex" in df.columns:
        aggs.append(pl.col("ex").filter(pl.col(AGE_START) == 0).first().alias("e0"))

    out = group_agg(df, by, *aggs)

    for label, start, end in SUMMARY_QX:
        years = out[f"_{label}_years"].to_numpy()
        if not np.all(years == end - start):
            raise ConfigError(
                f"{label} needs whole age intervals covering [{start}, {end})"
            )
    if "e0" in out.columns and out["e0"].is_null().any():
        raise ConfigError("e0 needs an interval starting at age 0")

    return out.drop(*(f"_{label}_years" for label, _, _ in SUMMARY_QX))
