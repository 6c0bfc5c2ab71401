"""
mesh-ssm - Statistical shape models of anatomical surfaces.

Builds dense correspondence across independently scanned triangle meshes
(rigid ICP, RBF non-rigid registration), removes residual pose with
Generalized Procrustes Analysis (GPA), and builds a Principal Component
Analysis (PCA) shape model that can fit and reconstruct unseen shapes.

Example usage:
    >>> import mesh_ssm as ssm
    >>>
    >>> # Load the training meshes
    >>> meshes = ssm.load_meshes("specimens/*.stl")
    >>>
    >>> # Register a common template onto every specimen
    >>> population = ssm.build_correspondence(meshes)
    >>>
    >>> # Perform GPA and build the model
    >>> result = ssm.generalized_procrustes(population)
    >>> model = ssm.build_shape_model(result.aligned, faces=population.faces)
    >>>
    >>> # Fit an unseen shape with 5 modes
    >>> fit = ssm.fit_shape(model, ssm.read_mesh("case.stl"), n_components=5)
"""

import logging

from mesh_ssm.config import (
    FitOptions,
    GPAOptions,
    NonRigidOptions,
    PCAOptions,
    PipelineConfig,
    RegistrationOptions,
    RigidOptions,
    load_config,
)
from mesh_ssm.correspondence import CorrespondenceSet, stack_axes
from mesh_ssm.exceptions import (
    CorrespondenceFailure,
    NonConvergenceWarning,
    NumericalDegeneracy,
    ShapeModelError,
    TopologyMismatch,
)
from mesh_ssm.fitting import (
    BatchFitResult,
    FitResult,
    fit_shape,
    fit_shape_batch,
    reconstruction_rmse,
)
from mesh_ssm.gpa import (
    GPAResult,
    align_specimen,
    align_to_mean,
    center,
    centroid_size,
    generalized_procrustes,
    mean_shape,
    procrustes_distance,
    scale,
)
from mesh_ssm.io import get_filenames, load_meshes, read_mesh, write_mesh
from mesh_ssm.mesh import Mesh, clean_mesh, free_edge_vertices, merge_duplicate_vertices
from mesh_ssm.nonrigid import NonRigidResult, RBFField, nonrigid_register
from mesh_ssm.pca import (
    ShapeModel,
    build_shape_model,
    flatten_shape,
    n_components_for_variance,
    project,
    reconstruct,
    unflatten_shape,
    warp_along_pc,
)
from mesh_ssm.rigid import PreAlignment, RigidResult, pca_prealign, rigid_icp
from mesh_ssm.template import (
    TemplateSnapshot,
    build_correspondence,
    register_to_template,
    select_template,
)
from mesh_ssm.transform import Transform, compute_rotation, solve_transform

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Configuration
    "RigidOptions",
    "NonRigidOptions",
    "GPAOptions",
    "PCAOptions",
    "FitOptions",
    "RegistrationOptions",
    "PipelineConfig",
    "load_config",
    # Errors
    "ShapeModelError",
    "TopologyMismatch",
    "NumericalDegeneracy",
    "CorrespondenceFailure",
    "NonConvergenceWarning",
    # Meshes and transforms
    "Mesh",
    "clean_mesh",
    "merge_duplicate_vertices",
    "free_edge_vertices",
    "Transform",
    "compute_rotation",
    "solve_transform",
    # Registration
    "PreAlignment",
    "RigidResult",
    "pca_prealign",
    "rigid_icp",
    "RBFField",
    "NonRigidResult",
    "nonrigid_register",
    "TemplateSnapshot",
    "select_template",
    "register_to_template",
    "build_correspondence",
    "CorrespondenceSet",
    "stack_axes",
    # GPA functions
    "GPAResult",
    "generalized_procrustes",
    "align_specimen",
    "align_to_mean",
    "center",
    "scale",
    "mean_shape",
    "centroid_size",
    "procrustes_distance",
    # Shape model functions
    "ShapeModel",
    "build_shape_model",
    "flatten_shape",
    "unflatten_shape",
    "project",
    "reconstruct",
    "warp_along_pc",
    "n_components_for_variance",
    "FitResult",
    "BatchFitResult",
    "fit_shape",
    "fit_shape_batch",
    "reconstruction_rmse",
    # I/O functions
    "read_mesh",
    "write_mesh",
    "load_meshes",
    "get_filenames",
]
