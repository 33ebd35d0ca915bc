"""
Helpers shared by the table-level functions: input coercion, column checks and
grouping by the identifying columns.

Every table-level function takes `id_cols`, the columns that together identify
a row (conventionally including "age_start" and "age_end"). The columns other
than the age columns form the grouping key `by`; each distinct `by` value is
one life table.
"""

from typing import Iterable, List, Sequence, Union

import polars as pl

from lifetables.constants import AGE_COLUMNS, AGE_START
from lifetables.errors import ConfigError, DomainError

Frame = Union[pl.DataFrame, pl.LazyFrame]


def as_frame(dt: Frame) -> pl.DataFrame:
    if isinstance(dt, pl.LazyFrame):
        return dt.collect()
    if isinstance(dt, pl.DataFrame):
        return dt
    raise ConfigError(
        f"expected a polars DataFrame or LazyFrame, got {type(dt).__name__}"
    )


def check_id_cols(id_cols: Iterable[str]) -> List[str]:
    if isinstance(id_cols, (str, pl.DataFrame, pl.LazyFrame)):
        raise ConfigError("`id_cols` must be a sequence of column names")
    id_cols = list(id_cols)
    missing = [col for col in AGE_COLUMNS if col not in id_cols]
    if missing:
        raise ConfigError(f"`id_cols` must include the age columns, missing {missing}")
    return id_cols


def group_columns(id_cols: Iterable[str]) -> List[str]:
    return [col for col in id_cols if col not in AGE_COLUMNS]


def check_columns(df: pl.DataFrame, columns: Iterable[str], what="input table"):
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise ConfigError(f"{what} is missing required column(s): {missing}")


def check_unique(df: pl.DataFrame, id_cols: Sequence[str]):
    duplicated = df.select(id_cols).is_duplicated()
    if duplicated.any():
        raise ConfigError(
            f"{duplicated.sum()} row(s) share the same `id_cols` values, "
            f"e.g. {describe_rows(df, id_cols, duplicated.arg_true().to_list())}"
        )


def over(expr: pl.Expr, by: Sequence[str]) -> pl.Expr:
    return expr.over(by) if by else expr


def group_agg(df: pl.DataFrame, by: Sequence[str], *aggs: pl.Expr) -> pl.DataFrame:
    """Aggregate per group, treating the whole table as one group when `by` is empty."""
    if by:
        return df.group_by(by, maintain_order=True).agg(*aggs)
    return df.select(*aggs)


def describe_rows(
    df: pl.DataFrame, by: Sequence[str], positions: Sequence[int], limit=3
) -> str:
    """Human-readable group/age context for the rows at `positions`."""
    columns = [col for col in dict.fromkeys((*by, AGE_START)) if col in df.columns]
    described = []
    for position in positions[:limit]:
        row = df.row(position, named=True)
        described.append(", ".join(f"{col}={row[col]}" for col in columns))
    text = "; ".join(f"[{d}]" for d in described)
    if len(positions) > limit:
        text += f" and {len(positions) - limit} more"
    return text


def convert_rows(df: pl.DataFrame, by: Sequence[str], converter, *columns):
    """
    Apply an elementwise converter to whole columns of `df`, re-raising a
    `DomainError` with the group and age of the offending rows.
    """
    try:
        return converter(*columns)
    except DomainError as err:
        raise DomainError(
            f"{err} at {describe_rows(df, by, err.positions)}", err.positions
        ) from err
