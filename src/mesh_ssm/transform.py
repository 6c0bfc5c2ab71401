"""
Similarity transforms and their closed-form least-squares solution.

A ``Transform`` maps points as ``x -> scale * R @ x + t``. The optimal
rotation between two corresponding point sets is obtained from the SVD of
their centered cross-covariance matrix, with the sign of the last right
singular vector flipped whenever the solution would be a reflection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sp

if TYPE_CHECKING:
    from numpy.typing import NDArray

EPS = 1e-12


@dataclass(frozen=True, eq=False)
class Transform:
    """Rotation, translation and isotropic scale.

    Attributes:
        rotation: Orthonormal 3x3 matrix with determinant +1
        translation: Translation vector, shape (3,)
        scale: Isotropic scale factor
    """

    rotation: NDArray[np.floating] = field(default_factory=lambda: np.eye(3))
    translation: NDArray[np.floating] = field(default_factory=lambda: np.zeros(3))
    scale: float = 1.0

    @classmethod
    def identity(cls) -> Transform:
        return cls()

    def apply(self, points: NDArray[np.floating]) -> NDArray[np.floating]:
        """Transform points, shape (n_points, 3)."""
        return self.scale * np.dot(points, self.rotation.T) + self.translation

    def compose(self, first: Transform) -> Transform:
        """Return the transform applying ``first`` and then ``self``."""
        return Transform(
            rotation=np.dot(self.rotation, first.rotation),
            translation=self.scale * np.dot(self.rotation, first.translation)
            + self.translation,
            scale=self.scale * first.scale,
        )

    def inverse(self) -> Transform:
        rotation = self.rotation.T
        return Transform(
            rotation=rotation,
            translation=-np.dot(rotation, self.translation) / self.scale,
            scale=1.0 / self.scale,
        )

    def as_matrix(self) -> NDArray[np.floating]:
        """Homogeneous 4x4 matrix acting on column vectors."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.scale * self.rotation
        matrix[:3, 3] = self.translation
        return matrix


def _validate_pair(source, target, weights):
    source = np.asarray(source, dtype=float)
    target = np.asarray(target, dtype=float)
    if source.ndim != 2 or source.shape[1] != 3:
        raise ValueError(f"Points must have shape (n_points, 3), got {source.shape}")
    if source.shape != target.shape:
        raise ValueError(
            f"Corresponding point sets must have equal shapes, "
            f"got {source.shape} and {target.shape}"
        )
    if len(source) == 0:
        raise ValueError("Cannot solve a transform from an empty point set")

    if weights is None:
        weights = np.ones(len(source))
    else:
        weights = np.asarray(weights, dtype=float).reshape(-1)
        if len(weights) != len(source):
            raise ValueError(
                f"Expected {len(source)} weights, got {len(weights)}"
            )
        if np.any(weights < 0) or weights.sum() <= 0:
            raise ValueError("Weights must be non-negative with a positive sum")
    return source, target, weights / weights.sum()


def centroid(points: NDArray[np.floating], weights=None) -> NDArray[np.floating]:
    """Weighted centroid of a point set."""
    points = np.asarray(points, dtype=float)
    if weights is None:
        return points.mean(axis=0)
    weights = np.asarray(weights, dtype=float)
    return np.dot(weights, points) / weights.sum()


def rms_size(points: NDArray[np.floating], weights=None) -> float:
    """Root mean square distance of the points from their centroid."""
    points = np.asarray(points, dtype=float)
    if weights is None:
        weights = np.full(len(points), 1.0 / len(points))
    else:
        weights = np.asarray(weights, dtype=float) / np.sum(weights)
    centered = points - centroid(points, weights)
    return float(np.sqrt(np.dot(weights, np.sum(centered**2, axis=1))))


def compute_rotation(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
    weights: NDArray[np.floating] | None = None,
) -> NDArray[np.floating]:
    """Optimal rotation taking the centered source onto the centered target.

    Args:
        source: Points to rotate, shape (n_points, 3)
        target: Corresponding points, shape (n_points, 3)
        weights: Optional non-negative weight per correspondence

    Returns:
        Rotation matrix R (3x3, det +1) with ``R @ (p - c_p) ~ q - c_q``
    """
    source, target, weights = _validate_pair(source, target, weights)
    source0 = source - centroid(source, weights)
    target0 = target - centroid(target, weights)

    h = np.dot((source0 * weights[:, None]).T, target0)
    u, s, vt = sp.svd(h)
    rotation = np.dot(vt.T, u.T)

    # reflection: flip the last right singular vector
    if np.linalg.det(rotation) < 0:
        vt[-1, :] *= -1
        rotation = np.dot(vt.T, u.T)
    return rotation


def solve_transform(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
    scale: bool = False,
    weights: NDArray[np.floating] | None = None,
) -> Transform:
    """Least-squares rigid or similarity transform aligning source to target.

    With ``scale`` the source is resized to the target's RMS size, so the
    transformed source always has the target's size.

    Args:
        source: Points to align, shape (n_points, 3)
        target: Corresponding points, shape (n_points, 3)
        scale: If True, include an isotropic scale factor
        weights: Optional non-negative weight per correspondence

    Returns:
        Transform with ``transform.apply(source) ~ target``
    """
    source, target, weights = _validate_pair(source, target, weights)
    rotation = compute_rotation(source, target, weights)

    factor = 1.0
    if scale:
        source_size = rms_size(source, weights)
        if source_size > EPS:
            factor = rms_size(target, weights) / source_size

    center_source = centroid(source, weights)
    center_target = centroid(target, weights)
    translation = center_target - factor * np.dot(rotation, center_source)
    return Transform(rotation=rotation, translation=translation, scale=float(factor))


def batched_rigid_transforms(
    source: NDArray[np.floating],
    target: NDArray[np.floating],
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Solve many small rigid Procrustes problems at once.

    Args:
        source: Stack of point sets, shape (n_sets, n_points, 3)
        target: Corresponding stack, shape (n_sets, n_points, 3)

    Returns:
        Rotations, shape (n_sets, 3, 3), and translations, shape (n_sets, 3)
    """
    center_source = source.mean(axis=1)
    center_target = target.mean(axis=1)
    source0 = source - center_source[:, None, :]
    target0 = target - center_target[:, None, :]

    h = np.einsum("nki,nkj->nij", source0, target0)
    u, _, vt = np.linalg.svd(h)
    rotation = np.matmul(np.swapaxes(vt, 1, 2), np.swapaxes(u, 1, 2))

    reflected = np.linalg.det(rotation) < 0
    if np.any(reflected):
        vt[reflected, -1, :] *= -1
        rotation[reflected] = np.matmul(
            np.swapaxes(vt[reflected], 1, 2), np.swapaxes(u[reflected], 1, 2)
        )

    translation = center_target - np.einsum("nij,nj->ni", rotation, center_source)
    return rotation, translation
