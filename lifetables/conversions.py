"""
Conversions between life table parameters for a single age interval.

    mx: central mortality rate
    ax: average years lived in the interval by those dying in it
    qx: probability of dying in the interval
    age_length: interval width n, `inf` for the open terminal interval

Every function is elementwise. Scalars give a float back; sequences, numpy
arrays and polars Series (broadcast against each other) give a numpy array.
A single out-of-domain element raises `DomainError` for the whole call, with
the offending indices in `DomainError.positions`.
"""

import numpy as np

from lifetables.errors import DomainError

# slack for round-off when checking a derived ax against [0, age_length]
_EPS = 1e-10


def _arrays(*values):
    scalar = all(np.ndim(value) == 0 for value in values)
    arrays = np.broadcast_arrays(*(np.asarray(value, dtype=float) for value in values))
    return scalar, [np.atleast_1d(array) for array in arrays]


def _result(values: np.ndarray, scalar: bool):
    return float(values[0]) if scalar else values


def _reject(bad: np.ndarray, message: str):
    if bad.any():
        positions = np.flatnonzero(bad)
        raise DomainError(f"{message} ({positions.size} element(s))", positions)


def _check_age_length(n):
    _reject(~(n > 0), "age_length must be positive")


def _check_mx(mx):
    _reject(np.isnan(mx) | (mx < 0), "mx must be a non-negative rate")


def _check_qx(qx):
    _reject(np.isnan(qx) | (qx < 0) | (qx > 1), "qx must lie in [0, 1]")


def _check_ax(ax, n):
    _reject(np.isnan(ax) | (ax < 0) | (ax > n), "ax must lie in [0, age_length]")


def mx_to_qx(mx, age_length):
    """qx = 1 - exp(-n * mx), assuming constant mortality within the interval."""
    scalar, (mx, n) = _arrays(mx, age_length)
    _check_age_length(n)
    _check_mx(mx)
    with np.errstate(invalid="ignore"):
        qx = np.where(np.isinf(n), 1.0, -np.expm1(-n * mx))
    return _result(qx, scalar)


def qx_to_mx(qx, age_length):
    """mx = -log(1 - qx) / n. Undefined for open intervals."""
    scalar, (qx, n) = _arrays(qx, age_length)
    _check_age_length(n)
    _reject(np.isinf(n), "mx cannot be recovered from qx for an open interval")
    _check_qx(qx)
    _reject(qx == 1, "qx = 1 gives an infinite mx")
    mx = -np.log1p(-qx) / n
    return _result(mx, scalar)


def mx_ax_to_qx(mx, ax, age_length):
    """
    qx = n * mx / (1 + (n - ax) * mx).

    Forced to 1 for open intervals. Raises `DomainError` if the ax/mx
    combination gives a qx outside [0, 1].
    """
    scalar, (mx, ax, n) = _arrays(mx, ax, age_length)
    _check_age_length(n)
    _check_mx(mx)
    closed = np.isfinite(n)
    with np.errstate(invalid="ignore", divide="ignore"):
        qx = np.where(closed, n * mx / (1 + (n - ax) * mx), 1.0)
    _reject(
        closed & (np.isnan(qx) | (qx < 0) | (qx > 1)),
        "mx and ax give a qx outside [0, 1]",
    )
    return _result(qx, scalar)


def qx_ax_to_mx(qx, ax, age_length):
    """mx = qx / (n - (n - ax) * qx); 1 / ax for open intervals."""
    scalar, (qx, ax, n) = _arrays(qx, ax, age_length)
    _check_age_length(n)
    _check_qx(qx)
    _check_ax(ax, n)
    closed = np.isfinite(n)
    with np.errstate(invalid="ignore", divide="ignore"):
        denominator = np.where(closed, n - (n - ax) * qx, ax)
        _reject(~(denominator > 0), "qx and ax give an infinite mx")
        mx = np.where(closed, qx, 1.0) / denominator
    return _result(mx, scalar)


def mx_qx_to_ax(mx, qx, age_length):
    """ax = n + 1 / mx - n / qx; 1 / mx for open intervals."""
    scalar, (mx, qx, n) = _arrays(mx, qx, age_length)
    _check_age_length(n)
    _check_mx(mx)
    _check_qx(qx)
    _reject((mx == 0) | (qx == 0), "ax is undefined when there is no mortality")
    with np.errstate(invalid="ignore"):
        ax = np.where(np.isinf(n), 1 / mx, n + 1 / mx - n / qx)
    _reject(
        np.isnan(ax) | (ax < -_EPS) | (ax > n + _EPS),
        "mx and qx give an ax outside [0, age_length]",
    )
    return _result(np.clip(ax, 0, n), scalar)


def mx_to_ax(mx, age_length):
    """
    ax under constant mortality within the interval:

        ax = n + 1 / mx - n / (1 - exp(-n * mx))

    which is 1 / mx for open intervals. Undefined for mx = 0; its limit there
    is n / 2, which callers must substitute themselves.
    """
    scalar, (mx, n) = _arrays(mx, age_length)
    _check_age_length(n)
    _check_mx(mx)
    _reject(mx == 0, "ax is undefined for mx = 0 (the limit is age_length / 2)")
    with np.errstate(invalid="ignore"):
        ax = np.where(np.isinf(n), 1 / mx, n + 1 / mx + n / np.expm1(-n * mx))
    return _result(ax, scalar)
