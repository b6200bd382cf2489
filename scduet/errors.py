"""
errors.py -- Exception types raised by scduet.

All of them derive from the built-in exception the rest of the package
would otherwise raise, so callers catching ``ValueError`` /
``RuntimeError`` keep working.
"""


# ── LAPACK / scipy condition-number guard ────────────────────────────
# Some LAPACK routines (eigh, inv, solve) raise scipy.linalg.LinAlgError
# with a *bytes* message like b'reciprocal condition number ...'.
# Stages that have a cheaper alternative retry once with a warning.

def is_lapack_condition_error(exc: Exception) -> bool:
    """Return True if *exc* is a LAPACK reciprocal-condition-number error."""
    msg = str(exc)
    return "reciprocal condition number" in msg


class DuplicateFeatureNameError(ValueError):
    """Feature identifiers must be unique when assigned to a record."""

    def __init__(self, duplicates: list[str]):
        self.duplicates = list(duplicates)
        shown = ", ".join(self.duplicates[:10])
        more = "" if len(self.duplicates) <= 10 else f" (+{len(self.duplicates) - 10} more)"
        super().__init__(
            f"{len(self.duplicates)} duplicated feature name(s): {shown}{more}. "
            "Make names unique before assigning them."
        )


class EmptyFilterResultError(ValueError):
    """A filter would remove every cell or every gene."""

    def __init__(self, axis: str, n_before: int, criteria: dict):
        self.axis = axis
        self.n_before = n_before
        self.criteria = dict(criteria)
        super().__init__(
            f"Filtering removed all {n_before} {axis} "
            f"(criteria: {self.criteria})."
        )


class StageOrderError(RuntimeError):
    """A pipeline stage was run before the fields it reads exist."""

    def __init__(self, stage: str, missing: list[str]):
        self.stage = stage
        self.missing = list(missing)
        super().__init__(
            f"Stage '{stage}' reads field(s) not yet populated: {', '.join(self.missing)}"
        )
