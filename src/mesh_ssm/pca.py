"""
Principal Component Analysis (PCA) shape models.

This module builds a linear statistical shape model from Procrustes-aligned,
corresponded surfaces, and reconstructs or projects shapes with it.

A shape (n_vertices, 3) is flattened to one length 3*n_vertices vector as
its X block, then its Y block, then its Z block.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sp

from mesh_ssm.config import PCAOptions
from mesh_ssm.correspondence import as_landmark_array, check_topology
from mesh_ssm.exceptions import NumericalDegeneracy

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ShapeModel:
    """Statistical shape model. Immutable once built.

    Attributes:
        mean_shape: Mean shape, shape (n_vertices, 3)
        eigenvectors: Orthonormal shape modes, shape (3 * n_vertices, n_components)
        eigenvalues: Variance along each mode, in descending order
        variance_explained: Proportion of the retained variance of each mode
        cumulative_variance: Running sum of ``variance_explained``
        pc_scores: Coefficients of each training specimen,
            shape (n_specimens, n_components)
        faces: Triangles shared by every shape of the model, or None
    """

    mean_shape: NDArray[np.floating]
    eigenvectors: NDArray[np.floating]
    eigenvalues: NDArray[np.floating]
    variance_explained: NDArray[np.floating]
    cumulative_variance: NDArray[np.floating]
    pc_scores: NDArray[np.floating]
    faces: NDArray[np.integer] | None = None

    def __post_init__(self):
        for name in (
            "mean_shape",
            "eigenvectors",
            "eigenvalues",
            "variance_explained",
            "cumulative_variance",
            "pc_scores",
        ):
            value = np.array(getattr(self, name), dtype=float)
            value.setflags(write=False)
            object.__setattr__(self, name, value)
        if self.faces is not None:
            faces = np.array(self.faces, dtype=np.int64)
            faces.setflags(write=False)
            object.__setattr__(self, "faces", faces)

    @property
    def n_components(self) -> int:
        return self.eigenvectors.shape[1]

    @property
    def n_vertices(self) -> int:
        return self.mean_shape.shape[0]

    @property
    def mean_vector(self) -> NDArray[np.floating]:
        return flatten_shape(self.mean_shape)


def flatten_shape(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Flatten (n_vertices, 3) to X block, Y block, Z block."""
    return np.asarray(shape, dtype=float).reshape(-1, order="F")


def unflatten_shape(vector: NDArray[np.floating]) -> NDArray[np.floating]:
    """Inverse of ``flatten_shape``."""
    vector = np.asarray(vector, dtype=float)
    if vector.ndim != 1 or vector.size % 3:
        raise ValueError(f"Expected a flat vector of length 3 * n_vertices, got {vector.shape}")
    return vector.reshape(vector.size // 3, 3, order="F")


def _flatten_landmarks(
    landmarks: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Flatten 3D landmark array to 2D matrix.

    Args:
        landmarks: Shape (n_vertices, 3, n_specimens)

    Returns:
        Flattened array, shape (n_vertices * 3, n_specimens)
    """
    n_vertices, n_dims, n_specimens = landmarks.shape
    flat = np.zeros((n_vertices * n_dims, n_specimens))
    for i in range(n_specimens):
        flat[:, i] = landmarks[:, :, i].reshape(-1, order="F")
    return flat


def build_shape_model(
    specimens,
    options: PCAOptions | None = None,
    faces: NDArray[np.integer] | None = None,
) -> ShapeModel:
    """Build a PCA shape model from aligned, corresponded specimens.

    The centered training matrix is scaled by 1/sqrt(n_specimens - 1) and
    decomposed through the economy SVD of its (n_specimens, 3 * n_vertices)
    transpose. Eigenvectors are back-projected into coordinate space, so
    the cost is governed by the number of specimens, not of vertices.

    Args:
        specimens: Aligned coordinates, shape (n_vertices, 3, n_specimens),
            a sequence of (n_vertices, 3) arrays, or a CorrespondenceSet
        options: Model options
        faces: Triangles shared by the specimens, stored on the model.
            Taken from the CorrespondenceSet when not given.

    Returns:
        The shape model with at most min(max_components, n_specimens - 1)
        components

    Raises:
        TopologyMismatch: If the specimens have different vertex counts
        ValueError: If there are fewer than two specimens
        NumericalDegeneracy: If the specimens do not vary at all
    """
    if options is None:
        options = PCAOptions()
    if faces is None:
        faces = getattr(specimens, "faces", None)
    landmarks = as_landmark_array(specimens)
    n_vertices, _, n_specimens = landmarks.shape
    if n_specimens < 2:
        raise ValueError(f"At least two specimens are required, got {n_specimens}")

    # Flatten to 2D matrix: (3 * n_vertices, n_specimens)
    flat = _flatten_landmarks(landmarks)
    mean_vec = flat.mean(axis=1, keepdims=True)
    centered = flat - mean_vec
    normalized = centered / np.sqrt(n_specimens - 1)

    u, s, _ = sp.svd(normalized.T, full_matrices=False)

    # Drop numerically zero singular values; mean removal costs one rank
    magnitude = max(s.max(initial=0.0), float(np.linalg.norm(mean_vec)))
    rank_tol = magnitude * max(normalized.shape) * np.finfo(float).eps
    n_nonzero = int(np.sum(s > rank_tol))
    n_components = min(options.max_components, n_specimens - 1, n_nonzero)
    if n_components == 0:
        raise NumericalDegeneracy("The specimens show no shape variation")

    s = s[:n_components]
    eigenvectors = np.dot(normalized, u[:, :n_components]) / s
    eigenvalues = s**2

    # Deterministic sign: largest-magnitude loading is positive
    largest = np.argmax(np.abs(eigenvectors), axis=0)
    signs = np.sign(eigenvectors[largest, np.arange(n_components)])
    signs[signs == 0] = 1
    eigenvectors = eigenvectors * signs

    scores = np.dot(centered.T, eigenvectors)
    variance_explained = eigenvalues / eigenvalues.sum()

    logger.info(
        "Built shape model: %d specimens, %d vertices, %d components "
        "(%.1f%% of variance in the first)",
        n_specimens,
        n_vertices,
        n_components,
        100 * variance_explained[0],
    )
    return ShapeModel(
        mean_shape=unflatten_shape(mean_vec[:, 0]),
        eigenvectors=eigenvectors,
        eigenvalues=eigenvalues,
        variance_explained=variance_explained,
        cumulative_variance=np.cumsum(variance_explained),
        pc_scores=scores,
        faces=faces,
    )


def _n_modes(model: ShapeModel, n_components: int | None) -> int:
    if n_components is None:
        return model.n_components
    if not 0 <= n_components <= model.n_components:
        raise ValueError(
            f"n_components must be in [0, {model.n_components}], got {n_components}"
        )
    return n_components


def project(
    model: ShapeModel,
    shape: NDArray[np.floating],
    n_components: int | None = None,
) -> NDArray[np.floating]:
    """Coefficients of a corresponded, aligned shape on the model's modes.

    Args:
        model: Shape model
        shape: Shape with the model's topology, shape (n_vertices, 3)
        n_components: Number of leading modes; all when None

    Returns:
        Coefficients, shape (n_components,)

    Raises:
        TopologyMismatch: If the shape's vertex count differs from the model's
    """
    shape = np.asarray(shape, dtype=float)
    check_topology([model.n_vertices, len(shape)])
    k = _n_modes(model, n_components)
    return np.dot(model.eigenvectors[:, :k].T, flatten_shape(shape) - model.mean_vector)


def reconstruct(
    model: ShapeModel,
    coefficients: NDArray[np.floating],
    n_components: int | None = None,
) -> NDArray[np.floating]:
    """Shape generated by the model from mode coefficients.

    Args:
        model: Shape model
        coefficients: Coefficients of the leading modes
        n_components: Use only this many leading modes; defaults to the
            number of coefficients given

    Returns:
        Reconstructed shape, shape (n_vertices, 3)
    """
    coefficients = np.asarray(coefficients, dtype=float).reshape(-1)
    if len(coefficients) > model.n_components:
        raise ValueError(
            f"Got {len(coefficients)} coefficients for {model.n_components} components"
        )
    k = len(coefficients) if n_components is None else _n_modes(model, n_components)
    k = min(k, len(coefficients))
    flat = model.mean_vector + np.dot(model.eigenvectors[:, :k], coefficients[:k])
    return unflatten_shape(flat)


def warp_along_pc(
    model: ShapeModel,
    pc: int,
    magnitude: float,
) -> NDArray[np.floating]:
    """Warp the mean shape along a principal component.

    This is useful for visualizing what shape changes are captured
    by each principal component.

    Args:
        model: Shape model
        pc: Principal component number (1-indexed, like PC1, PC2, etc.)
        magnitude: How far to warp along the PC (in units of standard deviation)

    Returns:
        Warped shape, shape (n_vertices, 3)
    """
    pc_index = pc - 1  # Convert to 0-indexed

    if pc_index < 0 or pc_index >= model.n_components:
        raise ValueError(f"PC {pc} is out of range. Available: 1-{model.n_components}")

    eigenvector = model.eigenvectors[:, pc_index]
    std = np.sqrt(model.eigenvalues[pc_index]) if model.eigenvalues[pc_index] > 0 else 1
    shift = unflatten_shape(eigenvector * magnitude * std)

    return model.mean_shape + shift


def n_components_for_variance(model: ShapeModel, threshold: float = 0.95) -> int:
    """Smallest number of leading modes explaining ``threshold`` of the variance."""
    if not 0 < threshold <= 1:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    # absorb rounding in the cumulative sum
    index = np.searchsorted(model.cumulative_variance, threshold - 1e-12)
    return int(min(index + 1, model.n_components))
