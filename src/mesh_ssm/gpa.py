"""
Generalized Procrustes Analysis (GPA) of corresponded surfaces.

This module removes the pose (and optionally size) differences left in a
corresponded population by aligning every specimen to the population's
own evolving mean shape.

Based on Dryden and Mardia (2016) "Statistical Shape Analysis".
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from mesh_ssm.config import GPAOptions
from mesh_ssm.correspondence import as_landmark_array
from mesh_ssm.exceptions import NonConvergenceWarning
from mesh_ssm.transform import Transform, solve_transform

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# inliers must exceed this fraction of the vertices for an outlier refit
MIN_INLIER_FRACTION = 0.5


@dataclass
class GPAResult:
    """Result of Generalized Procrustes Analysis.

    Attributes:
        aligned: Aligned coordinates, shape (n_vertices, 3, n_specimens)
        mean_shape: Mean shape after alignment, shape (n_vertices, 3)
        centroid_sizes: Centroid size of each specimen before alignment
        transforms: Transform taking each input specimen to its aligned pose
        iterations: Number of alignment passes run
        converged: Whether the relative mean change fell below the tolerance
        change: Relative mean change of the last pass
    """

    aligned: NDArray[np.floating]
    mean_shape: NDArray[np.floating]
    centroid_sizes: NDArray[np.floating]
    transforms: list[Transform] = field(default_factory=list)
    iterations: int = 0
    converged: bool = False
    change: float = np.inf


def center(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Center a shape by subtracting the centroid.

    Args:
        shape: Vertex coordinates, shape (n_vertices, 3)

    Returns:
        Centered shape with centroid at origin
    """
    return shape - shape.mean(axis=0)


def scale(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Scale a shape to unit Frobenius norm.

    Args:
        shape: Vertex coordinates, shape (n_vertices, 3)

    Returns:
        Scaled shape, unchanged if its norm is zero
    """
    norm = np.linalg.norm(shape)
    return shape / norm if norm > 0 else shape


def centroid_size(shape: NDArray[np.floating]) -> float:
    """Compute the centroid size of a shape.

    Centroid size is the square root of the sum of squared distances
    from each vertex to the centroid.

    Args:
        shape: Vertex coordinates, shape (n_vertices, 3)

    Returns:
        Centroid size (scalar)
    """
    return float(np.linalg.norm(center(shape)))


def mean_shape(landmarks: NDArray[np.floating]) -> NDArray[np.floating]:
    """Compute the mean shape from multiple specimens.

    Args:
        landmarks: Coordinates, shape (n_vertices, 3, n_specimens)

    Returns:
        Mean shape, shape (n_vertices, 3)
    """
    return landmarks.mean(axis=2)


def procrustes_distance(
    landmarks: NDArray[np.floating],
    reference: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Compute Procrustes distances from each specimen to a reference shape.

    Args:
        landmarks: Aligned coordinates, shape (n_vertices, 3, n_specimens)
        reference: Reference shape (e.g. mean), shape (n_vertices, 3)

    Returns:
        Array of Procrustes distances, shape (n_specimens,)
    """
    return np.linalg.norm(landmarks - reference[:, :, None], axis=(0, 1))


def align_specimen(
    shape: NDArray[np.floating],
    reference: NDArray[np.floating],
    allow_scaling: bool = False,
    reject_outliers: bool = False,
) -> tuple[NDArray[np.floating], Transform]:
    """Align one specimen to a reference with corresponding vertices.

    With ``reject_outliers``, vertices whose residual after the full fit
    exceeds mean + 2 standard deviations are treated as outliers. When the
    inliers are a majority and at least one outlier exists, the transform
    is re-estimated from the inliers alone and applied to every vertex.

    Args:
        shape: Specimen to align, shape (n_vertices, 3)
        reference: Reference shape, shape (n_vertices, 3)
        allow_scaling: If True, resize the specimen to the reference's size
        reject_outliers: If True, refit without outlier vertices

    Returns:
        The aligned specimen and the transform that produced it
    """
    transform = solve_transform(shape, reference, scale=allow_scaling)
    aligned = transform.apply(shape)

    if reject_outliers and len(shape) > 1:
        residuals = np.linalg.norm(aligned - reference, axis=1)
        threshold = residuals.mean() + 2 * residuals.std(ddof=1)
        inliers = residuals <= threshold
        n_inliers = int(inliers.sum())

        if n_inliers > MIN_INLIER_FRACTION * len(shape) and n_inliers < len(shape):
            transform = solve_transform(
                shape[inliers], reference[inliers], scale=allow_scaling
            )
            aligned = transform.apply(shape)
            logger.debug("Refit on %d of %d vertices", n_inliers, len(shape))

    return aligned, transform


def align_to_mean(
    landmarks: NDArray[np.floating],
    reference: NDArray[np.floating],
    allow_scaling: bool = False,
    reject_outliers: bool = False,
) -> tuple[NDArray[np.floating], list[Transform]]:
    """Align all specimens to a reference shape once.

    Args:
        landmarks: Coordinates, shape (n_vertices, 3, n_specimens)
        reference: Reference shape, shape (n_vertices, 3)
        allow_scaling: Resize every specimen to the reference's size
        reject_outliers: Use the outlier-robust fit

    Returns:
        Aligned copy of ``landmarks`` and the transform of each specimen
    """
    aligned = np.empty_like(landmarks)
    transforms = []
    for i in range(landmarks.shape[2]):
        aligned[:, :, i], transform = align_specimen(
            landmarks[:, :, i], reference, allow_scaling, reject_outliers
        )
        transforms.append(transform)
    return aligned, transforms


def _relative_change(new: NDArray[np.floating], old: NDArray[np.floating]) -> float:
    norm = np.linalg.norm(new)
    if norm == 0:
        return float(np.linalg.norm(new - old))
    return float(np.linalg.norm(new - old) / norm)


def generalized_procrustes(
    specimens,
    options: GPAOptions | None = None,
) -> GPAResult:
    """Perform Generalized Procrustes Analysis on a corresponded population.

    The algorithm:
    1. Centers each specimen
    2. Starts from the average of the centered specimens (or the specimen
       given by ``options.reference``)
    3. Aligns all specimens to the current mean shape
    4. Recomputes the mean shape, holding its size fixed when scaling
    5. Repeats until the relative change of the mean drops below the
       tolerance

    Args:
        specimens: Coordinates, shape (n_vertices, 3, n_specimens), a sequence
            of (n_vertices, 3) arrays or meshes, or a CorrespondenceSet.
            Never modified in place.
        options: GPA options

    Returns:
        GPAResult containing aligned coordinates, mean shape, and centroid sizes

    Raises:
        TopologyMismatch: If the specimens have different vertex counts
    """
    if options is None:
        options = GPAOptions()
    landmarks = as_landmark_array(specimens)
    n_vertices, _, n_specimens = landmarks.shape
    if options.reference is not None and not 0 <= options.reference < n_specimens:
        raise ValueError(
            f"reference must be in [0, {n_specimens}), got {options.reference}"
        )

    # Compute centroid sizes before any transformations
    centroid_sizes = np.zeros(n_specimens)
    for i in range(n_specimens):
        centroid_sizes[i] = centroid_size(landmarks[:, :, i])

    centroids = landmarks.mean(axis=0)
    aligned = landmarks - centroids[None, :, :]
    transforms = [Transform(translation=-centroids[:, i]) for i in range(n_specimens)]

    if options.reference is None:
        current_mean = mean_shape(aligned)
    else:
        current_mean = aligned[:, :, options.reference].copy()
    # with scaling, the mean keeps its initial centroid size
    mean_size = centroid_size(current_mean)

    converged = False
    change = np.inf
    iteration = 0
    for iteration in range(1, options.max_iterations + 1):
        aligned, steps = align_to_mean(
            aligned, current_mean, options.allow_scaling, options.reject_outliers
        )
        transforms = [step.compose(t) for step, t in zip(steps, transforms)]

        new_mean = mean_shape(aligned)
        if options.allow_scaling:
            new_mean = scale(center(new_mean)) * mean_size
        change = _relative_change(new_mean, current_mean)
        current_mean = new_mean
        logger.debug("GPA iteration %d: relative mean change %.3g", iteration, change)

        if change < options.tolerance:
            converged = True
            break

    if converged:
        logger.info(
            "GPA converged after %d iterations (%d specimens, %d vertices)",
            iteration,
            n_specimens,
            n_vertices,
        )
    else:
        message = (
            f"GPA did not converge in {options.max_iterations} iterations "
            f"(relative change {change:.3g})"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)

    return GPAResult(
        aligned=aligned,
        mean_shape=current_mean,
        centroid_sizes=centroid_sizes,
        transforms=transforms,
        iterations=iteration,
        converged=converged,
        change=change,
    )
