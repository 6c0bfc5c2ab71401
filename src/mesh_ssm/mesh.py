"""
Triangle mesh record and mesh hygiene.

The registration code needs a handful of clean-up operations before it can
build correspondences: collapsing duplicate vertices (a repeated target
point makes the RBF system singular), dropping degenerate triangles, and
finding the vertices that lie on free (boundary) edges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import trimesh

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass
class Mesh:
    """A triangle mesh.

    Attributes:
        vertices: Vertex coordinates, shape (n_vertices, 3)
        faces: Zero-based vertex indices of each triangle, shape (n_faces, 3)
    """

    vertices: NDArray[np.floating]
    faces: NDArray[np.integer]

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=float)
        faces = np.asarray(self.faces)
        if faces.size == 0:
            faces = faces.reshape(0, 3)
        self.faces = faces.astype(np.int64)

        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise ValueError(
                f"vertices must have shape (n_vertices, 3), got {self.vertices.shape}"
            )
        if self.faces.ndim != 2 or self.faces.shape[1] != 3:
            raise ValueError(f"faces must have shape (n_faces, 3), got {self.faces.shape}")
        if self.faces.size and (
            self.faces.min() < 0 or self.faces.max() >= len(self.vertices)
        ):
            raise ValueError(
                f"Face indices must lie in [0, {len(self.vertices)}), "
                f"got range [{self.faces.min()}, {self.faces.max()}]"
            )

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    def with_vertices(self, vertices: NDArray[np.floating]) -> Mesh:
        """Return a mesh with the same faces and new vertex positions."""
        return Mesh(vertices=np.array(vertices, dtype=float), faces=self.faces.copy())

    def copy(self) -> Mesh:
        return Mesh(vertices=self.vertices.copy(), faces=self.faces.copy())


def _as_trimesh(vertices: NDArray[np.floating], faces: NDArray[np.integer]) -> trimesh.Trimesh:
    # process=False keeps the vertex order
    return trimesh.Trimesh(
        vertices=np.asarray(vertices, dtype=float),
        faces=np.asarray(faces, dtype=np.int64).reshape(-1, 3),
        process=False,
    )


def _arrays(mesh: trimesh.Trimesh) -> tuple[NDArray[np.floating], NDArray[np.integer]]:
    return np.array(mesh.vertices, dtype=float), np.array(mesh.faces, dtype=np.int64).reshape(-1, 3)


def merge_duplicate_vertices(
    vertices: NDArray[np.floating],
    faces: NDArray[np.integer],
) -> tuple[NDArray[np.floating], NDArray[np.integer]]:
    """Collapse vertices that share a position.

    Positions are compared at trimesh's merge tolerance. Only vertices
    referenced by a face are kept; the first occurrence of each position
    is kept and the original vertex order is otherwise preserved.

    Args:
        vertices: Vertex coordinates, shape (n_vertices, 3)
        faces: Triangle indices, shape (n_faces, 3)

    Returns:
        Unique vertices and faces re-indexed into them
    """
    vertices = np.asarray(vertices, dtype=float)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(faces) == 0:
        return vertices, faces

    mesh = _as_trimesh(vertices, faces)
    mesh.merge_vertices()

    n_removed = len(vertices) - len(mesh.vertices)
    if n_removed:
        logger.debug("Merged %d duplicate vertices", n_removed)
    return _arrays(mesh)


def remove_degenerate_faces(
    vertices: NDArray[np.floating],
    faces: NDArray[np.integer],
) -> NDArray[np.integer]:
    """Drop zero-area triangles, including those repeating a vertex index."""
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(faces) == 0:
        return faces
    return faces[_as_trimesh(vertices, faces).nondegenerate_faces()]


def remove_unreferenced_vertices(
    vertices: NDArray[np.floating],
    faces: NDArray[np.integer],
) -> tuple[NDArray[np.floating], NDArray[np.integer]]:
    """Drop vertices that no face references and re-index the faces."""
    mesh = _as_trimesh(vertices, faces)
    mesh.remove_unreferenced_vertices()
    return _arrays(mesh)


def clean_mesh(mesh: Mesh) -> Mesh:
    """Remove duplicate vertices, degenerate faces and orphaned vertices.

    Args:
        mesh: Input mesh

    Returns:
        A new, cleaned mesh
    """
    cleaned = _as_trimesh(mesh.vertices, mesh.faces)
    if len(cleaned.faces):
        cleaned.merge_vertices()
        cleaned.update_faces(cleaned.nondegenerate_faces())
    cleaned.remove_unreferenced_vertices()
    vertices, faces = _arrays(cleaned)

    logger.debug(
        "Cleaned mesh: %d -> %d vertices, %d -> %d faces",
        mesh.n_vertices,
        len(vertices),
        mesh.n_faces,
        len(faces),
    )
    return Mesh(vertices=vertices, faces=faces)


def free_edge_vertices(faces: NDArray[np.integer]) -> NDArray[np.integer]:
    """Find the vertices lying on free edges.

    A free edge belongs to exactly one triangle. A closed mesh has none.

    Args:
        faces: Triangle indices, shape (n_faces, 3)

    Returns:
        Sorted unique vertex indices on free edges (empty for a closed mesh)
    """
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(faces) == 0:
        return np.zeros(0, dtype=np.int64)

    edges = np.sort(trimesh.geometry.faces_to_edges(faces), axis=1)
    free = trimesh.grouping.group_rows(edges, require_count=1)
    return np.unique(edges[np.asarray(free, dtype=np.int64).reshape(-1)])
