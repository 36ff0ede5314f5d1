# em_mixture/_errors.py
"""Exceptions and warnings raised by the K-means / EM code.

Input and shape errors abort a run. Numerical errors (singular covariance,
degenerate component) are first offered to the estimator's recovery policy
and only escalate when no recovery is configured or recovery fails.
"""

from __future__ import annotations

from typing import Optional, Sequence


class MixtureError(Exception):
    """Base class for all em_mixture errors."""


class MalformedInputError(MixtureError, ValueError):
    """Empty or unparseable data, non-finite values, or K outside [1, N]."""


class SizeMismatchError(MixtureError, ValueError):
    """Points, means or covariances disagree on their dimensions."""


class SingularityError(MixtureError, ArithmeticError):
    """A covariance matrix cannot be inverted (zero or negative determinant)."""

    def __init__(self, message: str, component: Optional[int] = None) -> None:
        super().__init__(message)
        self.component = component


class EmptyClusterError(MixtureError):
    """One or more K-means clusters received no members."""

    def __init__(self, message: str, clusters: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.clusters = tuple(int(c) for c in clusters)


class DegenerateComponentError(MixtureError):
    """A mixture component lost (almost) all of its responsibility mass."""

    def __init__(self, message: str, component: Optional[int] = None) -> None:
        super().__init__(message)
        self.component = component


class NonConvergenceWarning(UserWarning):
    """EM hit max_iter before the log-likelihood change fell below tol."""
