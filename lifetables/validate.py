"""
Checks of a life table's structural and numeric invariants.

Both entry points collect every violated check and raise a single
`ValidationError` listing all of them, rather than stopping at the first.
"""

import logging
from typing import Iterable, List

import polars as pl

from lifetables.ages import age_interval_issues, age_length, is_terminal, sort_by_age
from lifetables.constants import AGE_END, AGE_START, DEFAULT_VALIDATION_TOLERANCE
from lifetables.errors import ValidationError
from lifetables.frames import (
    Frame,
    as_frame,
    check_id_cols,
    describe_rows,
    group_agg,
    group_columns,
    over,
)

logger = logging.getLogger(__name__)


def _flagged(df: pl.DataFrame, by, flag: pl.Expr, message: str) -> List[str]:
    positions = df.select(flag.fill_null(False)).to_series().arg_true().to_list()
    if not positions:
        return []
    return [f"{message} in {len(positions)} row(s): {describe_rows(df, by, positions)}"]


def validate_lifetable(
    dt: Frame,
    id_cols: Iterable[str],
    *,
    check_coverage=True,
    tolerance: float = DEFAULT_VALIDATION_TOLERANCE,
) -> pl.DataFrame:
    """
    Raise `ValidationError` unless `dt` is a well-formed life table.

    Structure: the `id_cols` exist, each group's intervals are unique and
    contiguous, and with `check_coverage` they run from age 0 to an open
    terminal interval.

    Values, for whichever parameter columns are present: qx and px within
    [0, 1], terminal qx = 1, lx non-negative and non-increasing, dx
    non-negative and summing to the first lx, nLx and ex non-negative, Tx
    non-increasing. Differences up to `tolerance` (scaled by the radix for
    lx, dx, nLx and Tx) are allowed.

    Returns `dt` unchanged so the check can sit in a `.pipe` chain.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    missing = [col for col in id_cols if col not in df.columns]
    if missing:
        raise ValidationError([f"missing required column(s): {missing}"])

    by = group_columns(id_cols)
    df = sort_by_age(df, by)
    issues = age_interval_issues(
        df, by, require_terminal=check_coverage, require_zero_start=check_coverage
    )

    tol = tolerance
    slack = pl.lit(tol)
    if "lx" in df.columns:
        slack = tol * pl.max_horizontal(pl.lit(1.0), over(pl.col("lx").first(), by))

    def present(*columns):
        return all(col in df.columns for col in columns)

    if present("qx"):
        qx = pl.col("qx")
        issues += _flagged(
            df, by, qx.is_nan() | (qx < -tol) | (qx > 1 + tol), "qx outside [0, 1]"
        )
        issues += _flagged(
            df, by, is_terminal() & ((qx - 1).abs() > tol), "terminal qx is not 1"
        )
    if present("px"):
        px = pl.col("px")
        issues += _flagged(
            df, by, px.is_nan() | (px < -tol) | (px > 1 + tol), "px outside [0, 1]"
        )
    if present("lx"):
        lx = pl.col("lx")
        issues += _flagged(df, by, lx.is_nan() | (lx < -slack), "negative lx")
        issues += _flagged(df, by, over(lx.diff(), by) > slack, "lx increases with age")
    if present("dx"):
        issues += _flagged(df, by, pl.col("dx") < -slack, "negative dx")
    if present("dx", "lx"):
        totals = group_agg(
            df,
            by,
            (pl.col("dx").sum() - pl.col("lx").first()).abs().alias("excess"),
            pl.col("lx").first().alias("radix"),
            pl.col(AGE_END).is_infinite().any().alias("complete"),
        )
        allowed = tol * pl.max_horizontal(pl.lit(1.0), pl.col("radix"))
        # only complete tables lose the whole cohort
        totals = totals.filter(pl.col("complete") & ~(pl.col("excess") <= allowed))
        if totals.height:
            issues.append(
                f"dx does not sum to the starting lx in {totals.height} group(s)"
                + (f": {totals.select(by).rows()[:3]}" if by else "")
            )
    if present("nLx"):
        issues += _flagged(df, by, pl.col("nLx") < -slack, "negative nLx")
    if present("Tx"):
        issues += _flagged(
            df, by, over(pl.col("Tx").diff(), by) > slack, "Tx increases with age"
        )
    if present("ex"):
        issues += _flagged(df, by, pl.col("ex") < -tol, "negative ex")

    if issues:
        raise ValidationError(issues)
    logger.debug("life table passed %d row check(s)", df.height)
    return as_frame(dt)


def check_mx_ax_qx(
    dt: Frame,
    id_cols: Iterable[str] = (AGE_START, AGE_END),
    *,
    tolerance: float = DEFAULT_VALIDATION_TOLERANCE,
) -> pl.DataFrame:
    """
    Raise `ValidationError` listing every row whose qx differs from the qx
    implied by its mx and ax (qx = n mx / (1 + (n - ax) mx), 1 for the
    terminal interval) by more than `tolerance`.
    """

    df = as_frame(dt)
    id_cols = check_id_cols(id_cols)
    missing = [col for col in (*id_cols, "mx", "ax", "qx") if col not in df.columns]
    if missing:
        raise ValidationError([f"missing required column(s): {missing}"])

    by = group_columns(id_cols)
    df = sort_by_age(df, by)
    n, mx, ax = age_length(), pl.col("mx"), pl.col("ax")
    implied = pl.when(is_terminal()).then(1.0).otherwise(n * mx / (1 + (n - ax) * mx))
    inconsistent = ~((implied - pl.col("qx")).abs() <= tolerance)

    issues = _flagged(df, by, inconsistent, "qx inconsistent with mx and ax")
    if issues:
        raise ValidationError(issues)
    return as_frame(dt)
