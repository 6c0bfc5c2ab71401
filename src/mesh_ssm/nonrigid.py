"""
Non-rigid registration of one surface onto another.

The deformation runs in two phases. A global phase fits a smooth
displacement field (Gaussian radial basis functions on a regular control
grid) to symmetric nearest-neighbour correspondences, going from a coarse
grid with wide kernels to a finer grid with narrower ones, and re-aligns
rigidly after every round. A local phase then moves each vertex by the
distance-weighted blend of the rigid transforms fitted to the
neighbourhoods around it, shrinking the neighbourhood each round.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sp
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from mesh_ssm.config import NonRigidOptions, RigidOptions
from mesh_ssm.exceptions import NonConvergenceWarning, NumericalDegeneracy
from mesh_ssm.mesh import Mesh, free_edge_vertices, merge_duplicate_vertices
from mesh_ssm.rigid import rigid_icp
from mesh_ssm.transform import EPS, batched_rigid_transforms

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass
class RBFField:
    """Displacement field spanned by Gaussian kernels.

    Attributes:
        control_points: Kernel centres, shape (n_controls, 3)
        weights: Displacement weight of each kernel, shape (n_controls, 3)
        width: Gaussian standard deviation shared by all kernels
    """

    control_points: NDArray[np.floating]
    weights: NDArray[np.floating]
    width: float

    def evaluate(self, points: NDArray[np.floating]) -> NDArray[np.floating]:
        """Displacement at each point, shape (n_points, 3)."""
        return np.dot(gaussian_kernel(points, self.control_points, self.width), self.weights)


@dataclass
class NonRigidResult:
    """Result of non-rigid registration.

    Attributes:
        vertices: Deformed source vertices, shape (n_source_vertices, 3)
        faces: Source faces, unchanged
        error: Mean nearest-neighbour distance from the result to the target
        had_boundaries: Whether either mesh has free edges
        iterations: Rounds run in each phase
    """

    vertices: NDArray[np.floating]
    faces: NDArray[np.integer]
    error: float
    had_boundaries: bool
    iterations: int

    def as_mesh(self) -> Mesh:
        return Mesh(self.vertices, self.faces)


def gaussian_kernel(
    points: NDArray[np.floating],
    centres: NDArray[np.floating],
    width: float,
) -> NDArray[np.floating]:
    """Gaussian kernel matrix ``exp(-|p - c|^2 / (2 width^2))``."""
    return np.exp(-cdist(points, centres, "sqeuclidean") / (2.0 * width**2))


def control_grid(
    lower: NDArray[np.floating],
    upper: NDArray[np.floating],
    n_points: int,
) -> tuple[NDArray[np.floating], float]:
    """Regular grid of roughly ``n_points`` points filling a bounding box.

    The spacing is chosen from the box volume so that cells are close to
    cubic. Flat axes (zero extent) get a single grid plane.

    Args:
        lower: Minimum corner, shape (3,)
        upper: Maximum corner, shape (3,)
        n_points: Desired number of grid points

    Returns:
        Grid points, shape (n_grid, 3), and the grid spacing
    """
    extent = upper - lower
    flat = extent <= EPS * max(float(extent.max()), 1.0)
    if flat.all():
        return lower[None, :].copy(), 1.0

    n_active = int((~flat).sum())
    spacing = float(np.prod(extent[~flat]) / max(n_points, 1)) ** (1.0 / n_active)

    axes = []
    for low, high, is_flat in zip(lower, upper, flat):
        if is_flat:
            axes.append(np.array([low]))
        else:
            count = max(int(round((high - low) / spacing)) + 1, 2)
            axes.append(np.linspace(low, high, count))
    grid = np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1).reshape(-1, 3)
    return grid, spacing


def fit_rbf(
    points: NDArray[np.floating],
    displacements: NDArray[np.floating],
    control_points: NDArray[np.floating],
    width: float,
    lambda_: float,
) -> RBFField:
    """Fit kernel weights to sampled displacements by ridge regression.

    Solves ``(P^T P + lambda' I) W = P^T D`` for all three axes at once,
    where ``lambda' = lambda_ * mean(diag(P^T P))`` keeps the regularization
    independent of the mesh units.

    Raises:
        NumericalDegeneracy: If both the Cholesky and the least-squares
            solve fail
    """
    phi = gaussian_kernel(points, control_points, width)
    gram = np.dot(phi.T, phi)
    rhs = np.dot(phi.T, displacements)
    gram[np.diag_indices_from(gram)] += lambda_ * np.mean(np.diag(gram))

    try:
        weights = sp.solve(gram, rhs, assume_a="pos")
    except sp.LinAlgError:
        logger.warning(
            "RBF system with %d control points is singular, using least squares",
            len(control_points),
        )
        try:
            weights = sp.lstsq(gram, rhs)[0]
        except (sp.LinAlgError, ValueError) as err:
            raise NumericalDegeneracy(f"Cannot solve the RBF system: {err}") from err

    return RBFField(control_points=control_points, weights=weights, width=width)


def symmetric_correspondences(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Pair each source point with its nearest target point and vice versa.

    Returns:
        Matched source and target points, each shape (n_source + n_target, 3)
    """
    _, source_to_target = cKDTree(target).query(source)
    _, target_to_source = cKDTree(source).query(target)
    matched_source = np.concatenate([source, source[target_to_source]])
    matched_target = np.concatenate([target[source_to_target], target])
    return matched_source, matched_target


def _quiet_icp(source, target, options, source_boundary, target_boundary):
    # the capped refinement passes are expected to stop at their cap
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NonConvergenceWarning)
        return rigid_icp(source, target, options, source_boundary, target_boundary)


def _inverse_distance_weights(distances: NDArray[np.floating]) -> NDArray[np.floating]:
    """Row weights ``(sum(d) - d_j) / (sum(d) * (k - 1))``, rows summing to one."""
    k = distances.shape[1]
    if k == 1:
        return np.ones_like(distances)
    total = distances.sum(axis=1, keepdims=True)
    weights = np.full_like(distances, 1.0 / k)
    spread = total[:, 0] > EPS
    weights[spread] = (total[spread] - distances[spread]) / (total[spread] * (k - 1))
    return weights


def local_refinement_step(
    vertices: NDArray[np.floating],
    target: NDArray[np.floating],
    target_tree: cKDTree,
    k: int,
) -> NDArray[np.floating]:
    """One damped round of neighbourhood-weighted rigid refinement.

    Args:
        vertices: Current source vertices, shape (n_vertices, 3)
        target: Target vertices, shape (n_target, 3)
        target_tree: KD-tree over ``target``
        k: Neighbourhood size, at least 2

    Returns:
        Updated vertices, shape (n_vertices, 3)
    """
    n_vertices = len(vertices)
    distances, neighbours = cKDTree(vertices).query(vertices, k=k)
    weights = _inverse_distance_weights(distances.reshape(n_vertices, -1))
    neighbours = neighbours.reshape(n_vertices, -1)

    n_closest = min(3, len(target))
    target_distances, closest = target_tree.query(vertices, k=n_closest)
    target_distances = target_distances.reshape(n_vertices, -1)
    closest = closest.reshape(n_vertices, -1)
    target_weights = _inverse_distance_weights(target_distances)
    goals = np.einsum("nk,nkd->nd", target_weights, target[closest])

    rotations, translations = batched_rigid_transforms(
        vertices[neighbours], goals[neighbours]
    )
    # T_j(v_i) for every neighbour j of vertex i
    moved = np.einsum("nkij,nj->nki", rotations[neighbours], vertices)
    moved += translations[neighbours]
    blended = np.einsum("nk,nki->ni", weights, moved)
    return 0.5 * vertices + 0.5 * blended


def nonrigid_register(
    source: Mesh,
    target: Mesh,
    options: NonRigidOptions | None = None,
) -> NonRigidResult:
    """Deform ``source`` onto the surface of ``target``.

    The result keeps the source's vertex count and faces, so registering
    one template onto many specimens yields corresponded shapes.

    Args:
        source: Mesh to deform
        target: Mesh to deform onto; duplicate vertices are merged first
        options: Registration options

    Returns:
        NonRigidResult with the deformed vertices
    """
    if options is None:
        options = NonRigidOptions()
    if source.n_vertices == 0 or target.n_vertices == 0:
        raise ValueError("Cannot register empty meshes")

    target_vertices, target_faces = merge_duplicate_vertices(target.vertices, target.faces)
    source_boundary = free_edge_vertices(source.faces)
    target_boundary = free_edge_vertices(target_faces)
    had_boundaries = bool(len(source_boundary) or len(target_boundary))
    if had_boundaries:
        logger.warning(
            "Meshes have free edges (%d source, %d target boundary vertices)",
            len(source_boundary),
            len(target_boundary),
        )

    moving = source.vertices.copy()
    if options.use_rigid_prealign:
        prealign = RigidOptions(
            use_prealignment=True, max_iterations=options.prealign_iterations
        )
        moving = _quiet_icp(
            moving, target_vertices, prealign, source_boundary, target_boundary
        ).vertices

    source_keep = np.setdiff1d(np.arange(len(moving)), source_boundary)
    target_keep = np.setdiff1d(np.arange(len(target_vertices)), target_boundary)
    if len(source_keep) == 0:
        source_keep = np.arange(len(moving))
    if len(target_keep) == 0:
        target_keep = np.arange(len(target_vertices))

    exponents = np.linspace(*options.control_point_exponents, options.iterations)
    widths = np.linspace(*options.kernel_width_factors, options.iterations)
    refine = RigidOptions(use_prealignment=False, max_iterations=options.refine_iterations)

    # global phase, coarse to fine
    for rnd, (exponent, width_factor) in enumerate(zip(exponents, widths), start=1):
        matched_source, matched_target = symmetric_correspondences(
            moving[source_keep], target_vertices[target_keep]
        )
        grid, spacing = control_grid(
            moving.min(axis=0), moving.max(axis=0), int(round(10**exponent))
        )
        field = fit_rbf(
            matched_source,
            matched_target - matched_source,
            grid,
            width_factor * spacing,
            options.lambda_,
        )
        moving = moving + field.evaluate(moving)

        fitted = _quiet_icp(moving, target_vertices, refine, source_boundary, target_boundary)
        moving = fitted.vertices
        logger.debug(
            "RBF round %d/%d: %d control points, mean distance %.6g",
            rnd,
            options.iterations,
            len(grid),
            fitted.error,
        )

    # local phase, shrinking neighbourhoods
    target_tree = cKDTree(target_vertices)
    for rnd in range(1, options.iterations + 1):
        k = min(options.k_neighbors + options.iterations - rnd, len(moving))
        if k < 2:
            break
        moving = local_refinement_step(moving, target_vertices, target_tree, k)

    distances, _ = target_tree.query(moving)
    error = float(distances.mean())
    logger.info("Non-rigid registration done, mean distance %.6g", error)

    return NonRigidResult(
        vertices=moving,
        faces=source.faces.copy(),
        error=error,
        had_boundaries=had_boundaries,
        iterations=options.iterations,
    )
