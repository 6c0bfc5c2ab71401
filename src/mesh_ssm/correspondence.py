"""
Corresponded populations and the topology guard.

GPA and PCA treat vertex ``i`` of every specimen as the same anatomical
point, so all specimens must share one vertex count and one face array.
``as_landmark_array`` enforces this before any size-dependent array
operation takes place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np

from mesh_ssm.exceptions import TopologyMismatch
from mesh_ssm.mesh import Mesh

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass
class CorrespondenceSet:
    """A population of specimens sharing one topology.

    Attributes:
        coordinates: Vertex coordinates, shape (n_vertices, 3, n_specimens)
        faces: Triangles shared by all specimens, shape (n_faces, 3), or None
        names: Optional specimen names
        template_version: Version of the template the set was registered to
        template_index: Specimen index the final template was selected from
    """

    coordinates: NDArray[np.floating]
    faces: NDArray[np.integer] | None = None
    names: tuple[str, ...] | None = None
    template_version: int = 0
    template_index: int | None = None

    def __post_init__(self):
        self.coordinates = np.asarray(self.coordinates, dtype=float)
        if self.coordinates.ndim != 3 or self.coordinates.shape[1] != 3:
            raise ValueError(
                "coordinates must have shape (n_vertices, 3, n_specimens), "
                f"got {self.coordinates.shape}"
            )
        if self.n_specimens == 0:
            raise ValueError("At least one specimen is required")
        if self.names is not None:
            self.names = tuple(self.names)
            if len(self.names) != self.n_specimens:
                raise ValueError(
                    f"Got {len(self.names)} names for {self.n_specimens} specimens"
                )
        if self.faces is not None:
            # validates the face indices against the shared vertex count
            Mesh(self.coordinates[:, :, 0], self.faces)
            self.faces = np.asarray(self.faces, dtype=np.int64)

    @classmethod
    def from_shapes(
        cls,
        shapes: Sequence[NDArray[np.floating] | Mesh],
        faces: NDArray[np.integer] | None = None,
        names: Sequence[str] | None = None,
    ) -> CorrespondenceSet:
        """Build a set from per-specimen (n_vertices, 3) arrays or meshes."""
        if faces is None and shapes and isinstance(shapes[0], Mesh):
            faces = shapes[0].faces
        return cls(coordinates=as_landmark_array(shapes), faces=faces, names=names)

    @classmethod
    def from_xyz(
        cls,
        x: NDArray[np.floating],
        y: NDArray[np.floating],
        z: NDArray[np.floating],
        faces: NDArray[np.integer] | None = None,
    ) -> CorrespondenceSet:
        """Build a set from per-axis (n_vertices, n_specimens) matrices."""
        return cls(coordinates=stack_axes(x, y, z), faces=faces)

    @property
    def n_vertices(self) -> int:
        return self.coordinates.shape[0]

    @property
    def n_specimens(self) -> int:
        return self.coordinates.shape[2]

    def specimen(self, index: int) -> NDArray[np.floating]:
        return self.coordinates[:, :, index]

    def mesh(self, index: int) -> Mesh:
        if self.faces is None:
            raise ValueError("This correspondence set has no faces")
        return Mesh(self.coordinates[:, :, index].copy(), self.faces.copy())

    def as_xyz(self) -> tuple[NDArray, NDArray, NDArray]:
        """Per-axis coordinate matrices, each (n_vertices, n_specimens)."""
        return split_axes(self.coordinates)


def check_topology(vertex_counts: Sequence[int]) -> int:
    """Return the common vertex count or raise TopologyMismatch.

    Raises:
        ValueError: If there are no specimens
        TopologyMismatch: If the vertex counts differ
    """
    if len(vertex_counts) == 0:
        raise ValueError("At least one specimen is required")
    if len(set(vertex_counts)) > 1:
        raise TopologyMismatch(vertex_counts)
    return int(vertex_counts[0])


def as_landmark_array(specimens) -> NDArray[np.floating]:
    """Convert a population to one (n_vertices, 3, n_specimens) array.

    Accepts such an array directly, a ``CorrespondenceSet``, or a sequence
    of (n_vertices, 3) arrays or meshes. Vertex counts are compared before
    anything is stacked.

    Args:
        specimens: The population

    Returns:
        A new float array, shape (n_vertices, 3, n_specimens)

    Raises:
        ValueError: If the population is empty or an array is malformed
        TopologyMismatch: If the specimens have different vertex counts
    """
    if isinstance(specimens, CorrespondenceSet):
        return specimens.coordinates.copy()

    if isinstance(specimens, np.ndarray) and specimens.ndim == 3:
        if specimens.shape[1] != 3:
            raise ValueError(
                "shapes should be n_vertices x 3 dimensions x n_specimens, "
                f"got {specimens.shape}"
            )
        if specimens.shape[2] == 0:
            raise ValueError("At least one specimen is required")
        return np.array(specimens, dtype=float)

    shapes = [s.vertices if isinstance(s, Mesh) else np.asarray(s, dtype=float) for s in specimens]
    for i, shape in enumerate(shapes):
        if shape.ndim != 2 or shape.shape[1] != 3:
            raise ValueError(
                f"Specimen {i} must have shape (n_vertices, 3), got {shape.shape}"
            )
    check_topology([len(shape) for shape in shapes])
    return np.stack(shapes, axis=2)


def stack_axes(
    x: NDArray[np.floating],
    y: NDArray[np.floating],
    z: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Stack per-axis (n_vertices, n_specimens) matrices.

    Returns:
        Array of shape (n_vertices, 3, n_specimens)

    Raises:
        TopologyMismatch: If the matrices disagree on the vertex count
        ValueError: If they disagree on the specimen count
    """
    x, y, z = (np.asarray(a, dtype=float) for a in (x, y, z))
    for a in (x, y, z):
        if a.ndim != 2:
            raise ValueError(f"Axis matrices must be 2D, got shape {a.shape}")
    check_topology([x.shape[0], y.shape[0], z.shape[0]])
    if not x.shape[1] == y.shape[1] == z.shape[1]:
        raise ValueError(
            f"Axis matrices disagree on the number of specimens: "
            f"{x.shape[1]}, {y.shape[1]}, {z.shape[1]}"
        )
    return np.stack([x, y, z], axis=1)


def split_axes(landmarks: NDArray[np.floating]) -> tuple[NDArray, NDArray, NDArray]:
    """Inverse of ``stack_axes``."""
    return landmarks[:, 0, :].copy(), landmarks[:, 1, :].copy(), landmarks[:, 2, :].copy()
