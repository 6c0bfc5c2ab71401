"""
Template selection and population-wide registration.

Correspondence across a population is built by deforming one template
mesh onto every specimen: each result carries the template's vertex
count and faces, so vertex ``i`` means the same point on every specimen.
The template itself is refined between rounds by switching to the
registered specimen closest to the population mean. Every template is a
read-only ``TemplateSnapshot``; a refinement publishes a new snapshot with
the next version number instead of modifying the current one.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import joblib
import numpy as np

from mesh_ssm.config import NonRigidOptions, RegistrationOptions
from mesh_ssm.correspondence import CorrespondenceSet
from mesh_ssm.exceptions import CorrespondenceFailure
from mesh_ssm.gpa import center, generalized_procrustes, mean_shape, procrustes_distance
from mesh_ssm.mesh import Mesh
from mesh_ssm.nonrigid import NonRigidResult, nonrigid_register

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class TemplateSnapshot:
    """One immutable version of the registration template.

    Attributes:
        vertices: Template vertices, shape (n_vertices, 3), read-only
        faces: Template faces, shape (n_faces, 3), read-only
        version: Incremented every time a new template is published
        source_index: Specimen the template was taken from, if any
    """

    vertices: NDArray[np.floating]
    faces: NDArray[np.integer]
    version: int = 0
    source_index: int | None = None

    def __post_init__(self):
        mesh = Mesh(self.vertices, self.faces)
        vertices = mesh.vertices.copy()
        faces = mesh.faces.copy()
        vertices.setflags(write=False)
        faces.setflags(write=False)
        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "faces", faces)

    @classmethod
    def from_mesh(cls, mesh: Mesh, source_index: int | None = None) -> TemplateSnapshot:
        return cls(vertices=mesh.vertices, faces=mesh.faces, source_index=source_index)

    def as_mesh(self) -> Mesh:
        return Mesh(self.vertices.copy(), self.faces.copy())

    def advance(self, vertices: NDArray[np.floating], source_index: int) -> TemplateSnapshot:
        """Publish new vertex positions on the same faces as the next version."""
        return TemplateSnapshot(
            vertices=vertices,
            faces=self.faces,
            version=self.version + 1,
            source_index=source_index,
        )


def _shape_arrays(specimens) -> list[NDArray[np.floating]]:
    if isinstance(specimens, CorrespondenceSet):
        specimens = specimens.coordinates
    if isinstance(specimens, np.ndarray) and specimens.ndim == 3:
        return [specimens[:, :, i] for i in range(specimens.shape[2])]
    return [
        s.vertices if isinstance(s, Mesh) else np.asarray(s, dtype=float)
        for s in specimens
    ]


def select_template(specimens) -> int:
    """Index of the specimen closest to the population mean.

    With equal vertex counts, every specimen is centered and compared to
    the average centered shape by root mean square vertex distance. With
    differing counts there is no vertex-wise mean, so the distance of each
    centroid to the mean centroid is used instead. Ties go to the lowest
    index.

    Args:
        specimens: Meshes, (n_vertices, 3) arrays, an array of shape
            (n_vertices, 3, n_specimens), or a CorrespondenceSet

    Returns:
        Index of the selected specimen

    Raises:
        ValueError: If there are no specimens
    """
    shapes = _shape_arrays(specimens)
    if not shapes:
        raise ValueError("Cannot select a template from an empty population")

    counts = {len(shape) for shape in shapes}
    if len(counts) > 1:
        centroids = np.array([shape.mean(axis=0) for shape in shapes])
        errors = np.linalg.norm(centroids - centroids.mean(axis=0), axis=1)
        logger.debug(
            "Vertex counts vary (%d to %d), selecting by centroid distance",
            min(counts),
            max(counts),
        )
    else:
        centered = np.stack([center(shape) for shape in shapes], axis=2)
        # root mean square vertex distance to the average
        errors = procrustes_distance(centered, mean_shape(centered)) / np.sqrt(len(shapes[0]))

    index = int(np.argmin(errors))
    logger.debug(
        "Template selection: errors in [%.4g, %.4g], selected specimen %d",
        errors.min(),
        errors.max(),
        index,
    )
    return index


def register_to_template(
    template: TemplateSnapshot,
    specimen: Mesh,
    options: NonRigidOptions | None = None,
) -> NonRigidResult:
    """Deform the template onto one specimen.

    Returns:
        NonRigidResult whose vertices have the template's count and faces
    """
    return nonrigid_register(template.as_mesh(), specimen, options)


def _register_all(
    template: TemplateSnapshot,
    meshes: Sequence[Mesh],
    options: NonRigidOptions,
    n_jobs: int,
) -> list[NonRigidResult]:
    # joblib returns results in submission order
    return joblib.Parallel(n_jobs=n_jobs)(
        joblib.delayed(register_to_template)(template, mesh, options) for mesh in meshes
    )


def _check_errors(results: Sequence[NonRigidResult], threshold: float | None) -> None:
    if threshold is None:
        return
    for i, result in enumerate(results):
        if result.error > threshold:
            raise CorrespondenceFailure(result.error, threshold, specimen=i)


def build_correspondence(
    meshes: Sequence[Mesh],
    options: RegistrationOptions | None = None,
    names: Sequence[str] | None = None,
) -> CorrespondenceSet:
    """Register a template onto every mesh of a population.

    The first template is ``options.initial_template`` when given. Otherwise
    it is picked from the raw meshes; their vertex counts usually differ,
    so this compares centroids only and says little about shape for meshes
    in arbitrary poses. Pass ``initial_template`` when the choice matters.

    With ``options.refine_template`` and no ``initial_template``, a short
    preliminary round registers the first template onto every mesh, and
    the specimen closest to the mean of that round becomes the template of
    the main rounds. With ``options.refine_template``, the registered shapes
    are also aligned with GPA after each main round and the registered shape
    closest to the new mean is published as the next template. Refinement
    stops early once the same specimen is selected twice in a row. Without
    it the first template stays fixed.

    Args:
        meshes: Population, one mesh per specimen
        options: Registration options
        names: Optional specimen names, stored on the result

    Returns:
        CorrespondenceSet of the registered (not yet Procrustes-aligned)
        shapes, sharing the final template's faces

    Raises:
        ValueError: If the population is empty
        CorrespondenceFailure: If a registration's mean correspondence error
            exceeds ``options.max_correspondence_error``
    """
    if options is None:
        options = RegistrationOptions()
    meshes = list(meshes)
    if not meshes:
        raise ValueError("Cannot build correspondence for an empty population")
    if names is not None and len(names) != len(meshes):
        raise ValueError(f"Got {len(names)} names for {len(meshes)} meshes")

    if options.initial_template is None:
        index = select_template(meshes)
    elif 0 <= options.initial_template < len(meshes):
        index = options.initial_template
    else:
        raise ValueError(
            f"initial_template must be in [0, {len(meshes)}), "
            f"got {options.initial_template}"
        )
    snapshot = TemplateSnapshot.from_mesh(meshes[index], source_index=index)

    if options.refine_template and options.initial_template is None:
        logger.info(
            "Preliminary registration of %d meshes onto specimen %d", len(meshes), index
        )
        preliminary = dataclasses.replace(
            options.nonrigid, iterations=options.preliminary_iterations
        )
        results = _register_all(snapshot, meshes, preliminary, options.n_jobs)
        best = select_template(np.stack([r.vertices for r in results], axis=2))
        if best != index:
            snapshot = TemplateSnapshot(
                vertices=meshes[best].vertices,
                faces=meshes[best].faces,
                version=snapshot.version + 1,
                source_index=best,
            )

    for rnd in range(1, options.rounds + 1):
        logger.info(
            "Registration round %d/%d with template version %d (specimen %s)",
            rnd,
            options.rounds,
            snapshot.version,
            snapshot.source_index,
        )
        results = _register_all(snapshot, meshes, options.nonrigid, options.n_jobs)
        _check_errors(results, options.max_correspondence_error)
        coordinates = np.stack([r.vertices for r in results], axis=2)

        if not options.refine_template or rnd == options.rounds:
            break
        aligned = generalized_procrustes(coordinates, options.gpa).aligned
        best = select_template(aligned)
        if best == snapshot.source_index:
            logger.info("Template selection is stable after round %d", rnd)
            break
        snapshot = snapshot.advance(coordinates[:, :, best], best)

    return CorrespondenceSet(
        coordinates=coordinates,
        faces=np.array(snapshot.faces),
        names=names,
        template_version=snapshot.version,
        template_index=snapshot.source_index,
    )
