"""Error kinds raised by the identification core.

All errors are raised synchronously where they are detected; nothing in the
core retries. Callers decide whether to adjust parameters and try again.
"""

from __future__ import annotations

from typing import Any


class IdentificationError(Exception):
    """Base class for identification failures."""


class InvalidParameters(IdentificationError, ValueError):
    """Non-physical or non-positive physical constants (or step size)."""


class DimensionMismatch(IdentificationError, ValueError):
    """Vector/matrix sizes disagree with the state, observation or input dimension."""


class SingularCovariance(IdentificationError, ArithmeticError):
    """A covariance that must be inverted is not positive definite."""


class NonConvergence(IdentificationError, RuntimeError):
    """Optimizer exhausted its iteration/time budget before meeting tolerance.

    The best point found is available as ``result`` so the caller can accept it.
    """

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result
