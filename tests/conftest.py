"""Shared synthetic geometry."""

import numpy as np
import pytest
import trimesh

from mesh_ssm import Mesh


def rotation_about(axis, angle):
    """Rotation matrix about a coordinate axis (0, 1 or 2)."""
    c, s = np.cos(angle), np.sin(angle)
    i, j = [a for a in range(3) if a != axis]
    rotation = np.eye(3)
    rotation[i, i] = c
    rotation[i, j] = -s
    rotation[j, i] = s
    rotation[j, j] = c
    return rotation


def icosphere_mesh(subdivisions=2, radius=1.0, axes=(1.0, 1.0, 1.0)):
    sphere = trimesh.creation.icosphere(subdivisions=subdivisions, radius=radius)
    return Mesh(np.asarray(sphere.vertices) * np.asarray(axes), np.asarray(sphere.faces))


@pytest.fixture
def sphere():
    """Unit icosphere with 162 vertices."""
    return icosphere_mesh(2)


@pytest.fixture
def cube():
    """Closed unit cube, 8 vertices and 12 triangles, centered at the origin."""
    box = trimesh.creation.box(extents=(2.0, 2.0, 2.0))
    return Mesh(np.asarray(box.vertices), np.asarray(box.faces))


@pytest.fixture
def point_cloud():
    """Anisotropic random cloud without symmetries."""
    rng = np.random.default_rng(7)
    return rng.normal(size=(300, 3)) * np.array([3.0, 1.5, 0.6])


def one_direction_population(n_specimens, n_vertices=100, seed=42):
    """Corresponded shapes varying along one direction plus small noise."""
    rng = np.random.default_rng(seed)
    base = rng.normal(size=(n_vertices, 3))
    direction = rng.normal(size=(n_vertices, 3))
    direction /= np.linalg.norm(direction)
    amounts = np.linspace(-2.0, 2.0, n_specimens)
    return np.stack(
        [base + a * direction + 1e-3 * rng.normal(size=(n_vertices, 3)) for a in amounts],
        axis=2,
    )


@pytest.fixture
def population():
    """Eight corresponded shapes of 100 vertices."""
    return one_direction_population(8)


@pytest.fixture
def six_specimens():
    """Six corresponded shapes of 100 vertices."""
    return one_direction_population(6)
