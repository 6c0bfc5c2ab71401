"""
Rigid alignment of point sets and meshes.

Two point sets are first brought into rough agreement by matching their
principal axes (the 8 sign combinations of the axes are tried and the best
one kept), then refined with Iterative Closest Point (ICP): nearest
neighbour correspondences alternate with a closed-form rigid fit until the
mean correspondence distance stops changing.
"""

from __future__ import annotations

import itertools
import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sp
from scipy.spatial import cKDTree

from mesh_ssm.config import RigidOptions
from mesh_ssm.exceptions import NonConvergenceWarning
from mesh_ssm.transform import EPS, Transform, solve_transform

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# (+,+,+), (+,+,-), (+,-,+), ... (-,-,-); the first minimum wins
AXIS_SIGNS = tuple(itertools.product((1, -1), repeat=3))


@dataclass
class PreAlignment:
    """Affine map found by principal axis pre-alignment.

    Attributes:
        linear: 3x3 linear part, acting on column vectors
        translation: Translation vector, shape (3,)
        scale_factors: Per-axis extent ratios, target over source
        signs: Axis signs of the selected orientation
    """

    linear: NDArray[np.floating]
    translation: NDArray[np.floating]
    scale_factors: NDArray[np.floating]
    signs: tuple[int, int, int]

    def apply(self, points: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.dot(points, self.linear.T) + self.translation


@dataclass
class RigidResult:
    """Result of rigid ICP.

    Attributes:
        vertices: Aligned source points, shape (n_points, 3)
        transform: Accumulated ICP transform (applied after the pre-alignment)
        prealignment: Pre-alignment map, or None when it was not used
        error: Final mean nearest-neighbour distance
        iterations: Number of ICP iterations run
        converged: Whether the error change fell below the tolerance
        errors: Error before the first iteration and after every iteration
    """

    vertices: NDArray[np.floating]
    transform: Transform
    prealignment: PreAlignment | None
    error: float
    iterations: int
    converged: bool
    errors: list[float] = field(default_factory=list)


def _as_points(points, name: str) -> NDArray[np.floating]:
    points = np.asarray(points, dtype=float)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"{name} must have shape (n_points, 3), got {points.shape}")
    if len(points) == 0:
        raise ValueError(f"{name} is empty")
    return points


def principal_axes(points: NDArray[np.floating]) -> NDArray[np.floating]:
    """Principal axes of a point set as rows, by decreasing variance."""
    centered = points - points.mean(axis=0)
    u, _, _ = sp.svd(np.dot(centered.T, centered))
    return u.T


def mean_distance(points: NDArray[np.floating], tree: cKDTree) -> float:
    """Mean distance from each point to its nearest neighbour in ``tree``."""
    distances, _ = tree.query(points)
    return float(distances.mean())


def pca_prealign(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
) -> tuple[NDArray[np.floating], PreAlignment]:
    """Coarsely align ``source`` to ``target`` through their principal axes.

    Both sets are centered and expressed in their own principal axis
    frames. The source is stretched so that its extent along each axis
    matches the target's, and each of the 8 axis sign combinations is
    scored by the mean nearest-neighbour distance to the target. The best
    candidate is mapped back into the target frame.

    Args:
        source: Points to align, shape (n_points, 3)
        target: Reference points, shape (m_points, 3)

    Returns:
        The aligned source points and the affine map that produced them
    """
    source = _as_points(source, "source")
    target = _as_points(target, "target")

    source_center = source.mean(axis=0)
    target_center = target.mean(axis=0)
    source_axes = principal_axes(source)
    target_axes = principal_axes(target)

    projected_source = np.dot(source - source_center, source_axes.T)
    projected_target = np.dot(target - target_center, target_axes.T)

    source_extent = np.ptp(projected_source, axis=0)
    target_extent = np.ptp(projected_target, axis=0)
    scale_factors = target_extent / np.maximum(source_extent, EPS)
    scale_factors[source_extent <= EPS] = 1.0

    tree = cKDTree(target)
    best_signs, best_error, best_points = None, np.inf, None
    for signs in AXIS_SIGNS:
        candidate = np.dot(projected_source * (scale_factors * signs), target_axes)
        candidate += target_center
        error = mean_distance(candidate, tree)
        if error < best_error:
            best_signs, best_error, best_points = signs, error, candidate

    linear = np.dot(target_axes.T, np.dot(np.diag(scale_factors * best_signs), source_axes))
    translation = target_center - np.dot(linear, source_center)
    logger.debug("Pre-alignment signs %s, mean distance %.6g", best_signs, best_error)

    return best_points, PreAlignment(
        linear=linear,
        translation=translation,
        scale_factors=scale_factors,
        signs=best_signs,
    )


def _without(n_points: int, boundary) -> NDArray[np.integer]:
    keep = np.ones(n_points, dtype=bool)
    if boundary is not None and len(boundary):
        keep[np.asarray(boundary, dtype=np.int64)] = False
    if not keep.any():
        return np.arange(n_points)
    return np.flatnonzero(keep)


def rigid_icp(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
    options: RigidOptions | None = None,
    source_boundary: NDArray[np.integer] | None = None,
    target_boundary: NDArray[np.integer] | None = None,
) -> RigidResult:
    """Rigidly align ``source`` to ``target`` with ICP.

    Target boundary vertices are never used as matches and source boundary
    vertices do not take part in the transform estimate, so open edges do
    not drag the alignment.

    Args:
        source: Points to align, shape (n_points, 3)
        target: Reference points, shape (m_points, 3)
        options: ICP options
        source_boundary: Indices of source vertices on free edges
        target_boundary: Indices of target vertices on free edges

    Returns:
        RigidResult with the aligned points and the convergence record
    """
    if options is None:
        options = RigidOptions()
    source = _as_points(source, "source")
    target = _as_points(target, "target")

    prealignment = None
    moving = source.copy()
    if options.use_prealignment:
        moving, prealignment = pca_prealign(source, target)

    candidates = target[_without(len(target), target_boundary)]
    solve_idx = _without(len(source), source_boundary)
    tree = cKDTree(candidates)

    transform = Transform.identity()
    distances, matches = tree.query(moving)
    error = float(distances.mean())
    errors = [error]
    converged = False

    iteration = 0
    for iteration in range(1, options.max_iterations + 1):
        step = solve_transform(moving[solve_idx], candidates[matches[solve_idx]])
        moving = step.apply(moving)
        transform = step.compose(transform)

        distances, matches = tree.query(moving)
        new_error = float(distances.mean())
        errors.append(new_error)
        logger.debug("ICP iteration %d: mean distance %.6g", iteration, new_error)

        change = abs(error - new_error)
        error = new_error
        if change < options.tolerance:
            converged = True
            break

    if not converged:
        message = (
            f"ICP did not converge in {options.max_iterations} iterations "
            f"(mean distance {error:.6g})"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)

    return RigidResult(
        vertices=moving,
        transform=transform,
        prealignment=prealignment,
        error=error,
        iterations=iteration,
        converged=converged,
        errors=errors,
    )
