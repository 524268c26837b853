"""
exceptions.py - Error Taxonomy for Temporal Factor Lab

Input and configuration errors are raised immediately and never retried.
Each error also derives from the matching builtin so callers can catch
either the specific class or the generic one.

Non-convergence is not an error: it is reported through
`NonConvergenceWarning` and the model's convergence metadata.
"""

from __future__ import annotations

from typing import Iterable, Tuple


class TemporalFactorError(Exception):
    """Base class for every error raised by temporal_factor_lab."""


class MissingCovariateError(TemporalFactorError, KeyError):
    """
    Raised when one or more sample columns have no covariate value.

    Parameters
    ----------
    missing : iterable of str
        The sample identifiers without a covariate entry.
    """

    def __init__(self, missing: Iterable[str]):
        self.missing: Tuple[str, ...] = tuple(missing)
        shown = ", ".join(self.missing[:5])
        if len(self.missing) > 5:
            shown += f", ... ({len(self.missing) - 5} more)"
        super().__init__(
            f"No covariate value for {len(self.missing)} sample(s): {shown}"
        )

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return str(self.args[0])


class InsufficientSamplesError(TemporalFactorError, ValueError):
    """Raised when the matrix has fewer than n_factors + 1 samples."""


class InvalidFactorIndexError(TemporalFactorError, IndexError):
    """Raised when a factor index is outside the retained factors."""


class NonConvergenceWarning(UserWarning):
    """Training used its whole iteration budget without converging."""
