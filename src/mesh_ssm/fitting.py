"""
Fitting a shape model to shapes it was not trained on.

Pose and shape are estimated alternately: the shape is aligned to the
current model estimate, projected onto the model's modes, and the
reconstruction becomes the next estimate. A shape that does not share the
model's topology is first aligned with ICP and then resampled onto the
model vertices by nearest neighbour at every iteration.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import numpy as np
from scipy.spatial import cKDTree

from mesh_ssm.config import FitOptions, RigidOptions
from mesh_ssm.exceptions import NonConvergenceWarning
from mesh_ssm.mesh import Mesh
from mesh_ssm.pca import ShapeModel, project, reconstruct
from mesh_ssm.rigid import rigid_icp
from mesh_ssm.transform import solve_transform

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    """Result of fitting a shape model to one shape.

    Attributes:
        coefficients: Mode coefficients, shape (n_components,)
        reconstruction: Model shape for the coefficients, shape (n_vertices, 3)
        correspondences: Input points matched to the model vertices, in the
            model frame, shape (n_vertices, 3)
        aligned: All input vertices in the model frame
        rmse: Root mean square distance between correspondences and
            reconstruction
        iterations: Number of iterations run
        converged: Whether the error change fell below the tolerance
        n_components: Number of modes used
    """

    coefficients: NDArray[np.floating]
    reconstruction: NDArray[np.floating]
    correspondences: NDArray[np.floating]
    aligned: NDArray[np.floating]
    rmse: float
    iterations: int
    converged: bool
    n_components: int


@dataclass
class BatchFitResult:
    """Fits of one shape with several numbers of modes.

    Attributes:
        modes: Number of modes of each fit
        rmse: Reconstruction RMSE of each fit
        coefficients: Coefficients of each fit
        reconstructions: Reconstructed shape of each fit
        fit: The iterative fit with the largest number of modes
    """

    modes: tuple[int, ...]
    rmse: NDArray[np.floating]
    coefficients: list[NDArray[np.floating]] = field(default_factory=list)
    reconstructions: list[NDArray[np.floating]] = field(default_factory=list)
    fit: FitResult | None = None


def reconstruction_rmse(
    shape: NDArray[np.floating],
    reference: NDArray[np.floating],
) -> float:
    """Root mean square vertex distance between two corresponded shapes."""
    shape = np.asarray(shape, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if shape.shape != reference.shape:
        raise ValueError(
            f"Shapes must have equal sizes, got {shape.shape} and {reference.shape}"
        )
    return float(np.sqrt(np.mean(np.sum((shape - reference) ** 2, axis=1))))


def fit_shape(
    model: ShapeModel,
    vertices: NDArray[np.floating] | Mesh,
    n_components: int | None = None,
    options: FitOptions | None = None,
) -> FitResult:
    """Fit the model to a shape.

    If the shape has as many vertices as the model, vertex ``i`` is taken
    to correspond to model vertex ``i``. Otherwise the shape is rigidly
    aligned to the mean shape with ICP and its nearest points to the
    current estimate are used as correspondences.

    Args:
        model: Shape model
        vertices: Shape to fit, shape (n_points, 3), or a mesh
        n_components: Number of leading modes to use; all when None
        options: Fit options

    Returns:
        FitResult with the coefficients and the reconstruction
    """
    if options is None:
        options = FitOptions()
    if isinstance(vertices, Mesh):
        vertices = vertices.vertices
    points = np.array(vertices, dtype=float)
    if points.ndim != 2 or points.shape[1] != 3 or len(points) == 0:
        raise ValueError(f"vertices must have shape (n_points, 3), got {points.shape}")

    k = model.n_components if n_components is None else n_components
    if not 1 <= k <= model.n_components:
        raise ValueError(f"n_components must be in [1, {model.n_components}], got {k}")

    corresponded = len(points) == model.n_vertices
    if not corresponded:
        logger.debug(
            "Resampling %d points onto the %d model vertices",
            len(points),
            model.n_vertices,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergenceWarning)
            points = rigid_icp(points, model.mean_shape, RigidOptions()).vertices

    estimate = np.array(model.mean_shape)
    coefficients = np.zeros(k)
    correspondences = points
    error = np.inf
    converged = False

    iteration = 0
    for iteration in range(1, options.max_iterations + 1):
        if corresponded:
            matched = points
        else:
            _, nearest = cKDTree(points).query(estimate)
            matched = points[nearest]

        transform = solve_transform(matched, estimate, scale=options.allow_scaling)
        points = transform.apply(points)
        correspondences = transform.apply(matched)

        coefficients = project(model, correspondences, k)
        estimate = reconstruct(model, coefficients)

        new_error = reconstruction_rmse(correspondences, estimate)
        logger.debug("Fit iteration %d: rmse %.6g", iteration, new_error)
        change = abs(error - new_error)
        error = new_error
        if change < options.tolerance:
            converged = True
            break

    if not converged:
        message = (
            f"Model fit did not converge in {options.max_iterations} iterations "
            f"(rmse {error:.6g})"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)

    return FitResult(
        coefficients=coefficients,
        reconstruction=estimate,
        correspondences=correspondences,
        aligned=points,
        rmse=error,
        iterations=iteration,
        converged=converged,
        n_components=k,
    )


def fit_shape_batch(
    model: ShapeModel,
    vertices: NDArray[np.floating] | Mesh,
    modes_to_test: Sequence[int],
    options: FitOptions | None = None,
) -> BatchFitResult:
    """Fit the model with several numbers of modes.

    The iterative alignment runs once, with the largest number of modes.
    Coefficients for every other number of modes are then obtained by a
    single projection of that alignment.

    Args:
        model: Shape model
        vertices: Shape to fit, shape (n_points, 3), or a mesh
        modes_to_test: Numbers of modes to evaluate, each at least 1
        options: Fit options

    Returns:
        BatchFitResult with one entry per number of modes
    """
    modes = [int(m) for m in modes_to_test]
    if not modes:
        raise ValueError("modes_to_test is empty")
    if min(modes) < 1:
        raise ValueError(f"Numbers of modes must be at least 1, got {min(modes)}")
    if max(modes) > model.n_components:
        logger.warning(
            "Requested %d modes, the model has %d; clipping",
            max(modes),
            model.n_components,
        )
        modes = [min(m, model.n_components) for m in modes]

    fit = fit_shape(model, vertices, max(modes), options)

    rmse = np.zeros(len(modes))
    coefficients = []
    reconstructions = []
    for i, n_modes in enumerate(modes):
        coeffs = project(model, fit.correspondences, n_modes)
        shape = reconstruct(model, coeffs)
        rmse[i] = reconstruction_rmse(fit.correspondences, shape)
        coefficients.append(coeffs)
        reconstructions.append(shape)

    return BatchFitResult(
        modes=tuple(modes),
        rmse=rmse,
        coefficients=coefficients,
        reconstructions=reconstructions,
        fit=fit,
    )
