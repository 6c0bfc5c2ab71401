"""
Option records for every stage of the pipeline.

Each operation takes one frozen record with named fields and fixed
defaults. ``PipelineConfig`` groups them so a whole run can be described
by a single JSON file.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


def _check_positive(name: str, value: int) -> None:
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")


def _check_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


@dataclass(frozen=True)
class RigidOptions:
    """Options for PCA pre-alignment and rigid ICP.

    Attributes:
        use_prealignment: Run the PCA-axis pre-alignment before ICP
        max_iterations: Iteration cap of the ICP loop
        tolerance: Stop when the mean correspondence error changes by less
    """

    use_prealignment: bool = True
    max_iterations: int = 50
    tolerance: float = 1e-6

    def __post_init__(self):
        _check_positive("max_iterations", self.max_iterations)
        _check_non_negative("tolerance", self.tolerance)


@dataclass(frozen=True)
class NonRigidOptions:
    """Options for RBF deformation and local Procrustes refinement.

    Attributes:
        iterations: Rounds of both the global RBF phase and the local phase
        lambda_: Ridge regularization of the RBF normal equations, relative
            to the mean diagonal of the Gram matrix
        use_rigid_prealign: Run rigid ICP (with PCA pre-alignment) first
        k_neighbors: Final neighbourhood size of the local refinement
        prealign_iterations: ICP iterations of the initial rigid alignment
        refine_iterations: ICP iterations run after every RBF round
        control_point_exponents: First and last ``e`` of the control point
            count ``10**e``
        kernel_width_factors: First and last Gaussian width, in units of the
            control grid spacing
    """

    iterations: int = 15
    lambda_: float = 1e-3
    use_rigid_prealign: bool = True
    k_neighbors: int = 12
    prealign_iterations: int = 30
    refine_iterations: int = 5
    control_point_exponents: tuple[float, float] = (2.1, 2.4)
    kernel_width_factors: tuple[float, float] = (1.5, 1.0)

    def __post_init__(self):
        _check_positive("iterations", self.iterations)
        _check_positive("prealign_iterations", self.prealign_iterations)
        _check_positive("refine_iterations", self.refine_iterations)
        _check_non_negative("lambda_", self.lambda_)
        if self.k_neighbors < 2:
            raise ValueError(f"k_neighbors must be at least 2, got {self.k_neighbors}")


@dataclass(frozen=True)
class GPAOptions:
    """Options for Generalized Procrustes Analysis.

    Attributes:
        allow_scaling: Scale every specimen to the size of the evolving mean
        max_iterations: Iteration cap
        tolerance: Threshold on the relative change of the mean
        reject_outliers: Refit each specimen on its inlier vertices
        reference: Index of the specimen used as initial mean; the average of
            the centered specimens is used when None
    """

    allow_scaling: bool = True
    max_iterations: int = 10
    tolerance: float = 1e-6
    reject_outliers: bool = False
    reference: int | None = None

    def __post_init__(self):
        _check_positive("max_iterations", self.max_iterations)
        _check_non_negative("tolerance", self.tolerance)


@dataclass(frozen=True)
class PCAOptions:
    max_components: int = 15

    def __post_init__(self):
        _check_positive("max_components", self.max_components)


@dataclass(frozen=True)
class FitOptions:
    """Options for fitting a shape model to an unseen shape.

    Attributes:
        max_iterations: Cap of the register/project/reconstruct loop
        tolerance: Stop when the reconstruction error changes by less
        allow_scaling: Include isotropic scaling in the pose estimate
    """

    max_iterations: int = 100
    tolerance: float = 1e-6
    allow_scaling: bool = False

    def __post_init__(self):
        _check_positive("max_iterations", self.max_iterations)
        _check_non_negative("tolerance", self.tolerance)


@dataclass(frozen=True)
class RegistrationOptions:
    """Options for building correspondence across a population.

    Attributes:
        rounds: Registration rounds against the evolving template
        preliminary_iterations: Non-rigid iterations of the template search
        refine_template: Search for a better first template and re-select
            the template after every round
        initial_template: Index of the first template; chosen automatically
            when None
        n_jobs: Parallel jobs for per-specimen registration (joblib)
        max_correspondence_error: Mean correspondence error above which a
            registration is treated as failed; no check when None
        nonrigid: Options of every per-specimen registration
        gpa: Options of the GPA run after every round
    """

    rounds: int = 3
    preliminary_iterations: int = 5
    refine_template: bool = True
    initial_template: int | None = None
    n_jobs: int = 1
    max_correspondence_error: float | None = None
    nonrigid: NonRigidOptions = field(default_factory=NonRigidOptions)
    gpa: GPAOptions = field(default_factory=lambda: GPAOptions(allow_scaling=False))

    def __post_init__(self):
        _check_positive("rounds", self.rounds)
        _check_positive("preliminary_iterations", self.preliminary_iterations)


@dataclass(frozen=True)
class PipelineConfig:
    """All options of one shape-model run."""

    rigid: RigidOptions = field(default_factory=RigidOptions)
    registration: RegistrationOptions = field(default_factory=RegistrationOptions)
    gpa: GPAOptions = field(default_factory=GPAOptions)
    pca: PCAOptions = field(default_factory=PCAOptions)
    fit: FitOptions = field(default_factory=FitOptions)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> PipelineConfig:
        """Build a configuration from a nested mapping.

        Sections and keys not given keep their defaults.

        Args:
            values: Mapping of section name to a mapping of option values

        Returns:
            The configuration

        Raises:
            ValueError: If a section or option name is unknown
        """
        sections = {f.name: f for f in dataclasses.fields(cls)}
        kwargs = {}
        for name, section in values.items():
            if name not in sections:
                raise ValueError(f"Unknown configuration section: {name}")
            kwargs[name] = _record_from_dict(sections[name].default_factory(), section)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _record_from_dict(default, values: Mapping[str, Any]):
    known = {f.name for f in dataclasses.fields(default)}
    kwargs = {}
    for key, value in values.items():
        if key == "lambda":
            key = "lambda_"
        if key not in known:
            raise ValueError(f"Unknown option for {type(default).__name__}: {key}")
        if isinstance(value, Mapping):
            value = _record_from_dict(getattr(default, key), value)
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return dataclasses.replace(default, **kwargs)


def load_config(filepath: str | Path) -> PipelineConfig:
    """Read a pipeline configuration from a JSON file.

    Args:
        filepath: Path to the JSON file

    Returns:
        The configuration

    Raises:
        FileNotFoundError: If the file does not exist
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")
    with open(filepath) as f:
        return PipelineConfig.from_dict(json.load(f))
