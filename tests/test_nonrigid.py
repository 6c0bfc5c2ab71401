"""Tests for nonrigid module."""

import numpy as np
from scipy.spatial import cKDTree

from conftest import icosphere_mesh
from mesh_ssm import Mesh, NonRigidOptions, nonrigid_register
from mesh_ssm.nonrigid import (
    RBFField,
    control_grid,
    fit_rbf,
    local_refinement_step,
    symmetric_correspondences,
)


def mean_distance(points, target):
    distances, _ = cKDTree(target).query(points)
    return distances.mean()


class TestControlGrid:
    def test_grid_size_follows_requested_count(self):
        grid, spacing = control_grid(np.zeros(3), np.ones(3), 125)

        assert 64 <= len(grid) <= 216
        np.testing.assert_almost_equal(spacing, 0.2)
        np.testing.assert_array_equal(grid.min(axis=0), [0.0, 0.0, 0.0])
        np.testing.assert_array_equal(grid.max(axis=0), [1.0, 1.0, 1.0])

    def test_flat_box_gets_single_plane(self):
        grid, _ = control_grid(np.zeros(3), np.array([1.0, 1.0, 0.0]), 100)

        np.testing.assert_array_equal(grid[:, 2], 0.0)


class TestRBF:
    def test_fit_reproduces_constant_displacement(self):
        rng = np.random.default_rng(0)
        points = rng.uniform(-1, 1, size=(200, 3))
        grid, spacing = control_grid(points.min(axis=0), points.max(axis=0), 64)
        shift = np.tile([0.1, -0.2, 0.05], (200, 1))

        field = fit_rbf(points, shift, grid, 1.5 * spacing, 1e-6)

        assert isinstance(field, RBFField)
        np.testing.assert_array_almost_equal(field.evaluate(points), shift, decimal=2)

    def test_zero_displacement_gives_zero_field(self):
        points = np.random.default_rng(1).normal(size=(50, 3))
        grid, spacing = control_grid(points.min(axis=0), points.max(axis=0), 27)

        field = fit_rbf(points, np.zeros((50, 3)), grid, spacing, 1e-3)

        np.testing.assert_array_almost_equal(field.weights, 0.0)


class TestCorrespondences:
    def test_symmetric_pairs_cover_both_sets(self):
        source = np.random.default_rng(2).normal(size=(30, 3))
        target = np.random.default_rng(3).normal(size=(20, 3))

        matched_source, matched_target = symmetric_correspondences(source, target)

        assert matched_source.shape == (50, 3)
        assert matched_target.shape == (50, 3)
        np.testing.assert_array_equal(matched_source[:30], source)
        np.testing.assert_array_equal(matched_target[30:], target)


class TestLocalRefinement:
    def test_preserves_vertex_count(self, sphere):
        target = icosphere_mesh(3).vertices

        moved = local_refinement_step(sphere.vertices, target, cKDTree(target), 8)

        assert moved.shape == sphere.vertices.shape
        assert np.all(np.isfinite(moved))

    def test_moves_toward_target(self, sphere):
        target = icosphere_mesh(3, radius=1.1).vertices

        moved = local_refinement_step(sphere.vertices, target, cKDTree(target), 8)

        assert mean_distance(moved, target) < mean_distance(sphere.vertices, target)


class TestNonRigidRegister:
    def test_sphere_onto_ellipsoid(self, sphere):
        target = icosphere_mesh(4, axes=(1.5, 1.0, 0.7))
        options = NonRigidOptions(iterations=3, use_rigid_prealign=False)

        result = nonrigid_register(sphere, target, options)

        assert result.vertices.shape == (162, 3)
        np.testing.assert_array_equal(result.faces, sphere.faces)
        assert not result.had_boundaries
        assert result.error < 0.5 * mean_distance(sphere.vertices, target.vertices)

    def test_target_with_duplicate_vertices(self, sphere):
        target = icosphere_mesh(2, axes=(1.2, 1.0, 1.0))
        vertices = np.vstack([target.vertices, target.vertices[:1]])
        faces = target.faces.copy()
        faces[0, 0] = len(vertices) - 1
        duplicated = Mesh(vertices, faces)

        result = nonrigid_register(
            sphere, duplicated, NonRigidOptions(iterations=2, use_rigid_prealign=False)
        )

        assert np.all(np.isfinite(result.vertices))
        assert result.vertices.shape == sphere.vertices.shape

    def test_open_surface_reports_boundaries(self, sphere):
        # drop the triangles of the upper cap
        upper = sphere.vertices[:, 2] > 0.8
        keep = ~np.any(upper[sphere.faces], axis=1)
        open_target = Mesh(sphere.vertices * 1.1, sphere.faces[keep])

        result = nonrigid_register(
            sphere, open_target, NonRigidOptions(iterations=2, use_rigid_prealign=False)
        )

        assert result.had_boundaries
        assert result.vertices.shape == (162, 3)

    def test_with_rigid_prealignment(self, sphere):
        target = icosphere_mesh(4, axes=(1.2, 1.0, 0.9))
        shifted = Mesh(target.vertices + np.array([3.0, 0.0, 0.0]), target.faces)

        result = nonrigid_register(sphere, shifted, NonRigidOptions(iterations=2))

        assert result.error < 0.1
