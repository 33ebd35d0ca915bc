from typing import Iterable, Optional, Sequence


class LifeTableError(Exception):
    """Base class for errors raised by the life table functions."""


class ConfigError(LifeTableError):
    """Malformed or missing columns, bad grouping, or an age mapping mismatch."""


class DomainError(LifeTableError):
    """
    A single-row formula received (or produced) a value outside its domain.

    `positions` holds the 0-based indices of the offending elements so that
    callers working on whole tables can report which rows were at fault.
    """

    def __init__(self, message: str, positions: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.positions = [int(i) for i in positions] if positions is not None else []


class UnsupportedCategoryError(LifeTableError):
    """A categorical value with no defined branch (e.g. sex = "both")."""


class ValidationError(LifeTableError):
    """Every invariant a life table violates, collected before raising."""

    def __init__(self, issues: Iterable[str]):
        self.issues = list(issues)
        super().__init__(
            f"{len(self.issues)} life table check(s) failed:\n"
            + "\n".join(f"  - {issue}" for issue in self.issues)
        )


class ConvergenceWarning(UserWarning):
    """Iterative ax refinement hit its iteration cap before converging."""
