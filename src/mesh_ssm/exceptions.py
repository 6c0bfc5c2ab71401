"""
Errors and warnings raised by the shape-model pipeline.

Structural problems (empty input, mismatched topology) are raised as soon as
they are detected. Numerical edge cases are normally guarded locally so that
iterative loops keep running; the exceptions below are what remains when a
guard cannot produce a meaningful result.
"""

from __future__ import annotations


class ShapeModelError(Exception):
    """Base class for all errors raised by mesh_ssm."""


class TopologyMismatch(ShapeModelError, ValueError):
    """Specimens that must share one topology have different vertex counts."""

    def __init__(self, vertex_counts):
        self.vertex_counts = tuple(int(n) for n in vertex_counts)
        distinct = sorted(set(self.vertex_counts))
        super().__init__(
            "Specimens do not share a common topology: "
            f"found vertex counts {distinct} across {len(self.vertex_counts)} specimens"
        )


class NumericalDegeneracy(ShapeModelError, ArithmeticError):
    """A numerical problem could not be guarded locally."""


class CorrespondenceFailure(ShapeModelError, RuntimeError):
    """Nearest-neighbour correspondences are implausible."""

    def __init__(self, error: float, threshold: float, specimen: int | None = None):
        self.error = float(error)
        self.threshold = float(threshold)
        self.specimen = specimen
        where = "" if specimen is None else f" for specimen {specimen}"
        super().__init__(
            f"Mean correspondence error {self.error:.4f}{where} exceeds "
            f"the accepted threshold {self.threshold:.4f}"
        )


class NonConvergenceWarning(UserWarning):
    """An iterative loop hit its iteration cap before meeting its tolerance."""
