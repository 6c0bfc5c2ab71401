"""Tests for GPA module."""

import numpy as np
import pytest

from conftest import icosphere_mesh, rotation_about
from mesh_ssm import (
    CorrespondenceSet,
    GPAOptions,
    NonConvergenceWarning,
    TopologyMismatch,
    align_specimen,
    align_to_mean,
    center,
    centroid_size,
    generalized_procrustes,
    mean_shape,
    procrustes_distance,
    scale,
    stack_axes,
)


class TestCenter:
    def test_center_moves_centroid_to_origin(self):
        shape = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0], [7.0, 8.0, 9.0]])
        centered = center(shape)

        # Centroid should be at origin
        np.testing.assert_array_almost_equal(
            centered.mean(axis=0), np.array([0.0, 0.0, 0.0])
        )

    def test_center_preserves_relative_positions(self):
        shape = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        centered = center(shape)

        orig_dist = np.linalg.norm(shape[0] - shape[1])
        cent_dist = np.linalg.norm(centered[0] - centered[1])
        np.testing.assert_almost_equal(orig_dist, cent_dist)


class TestScale:
    def test_scale_normalizes_to_unit_norm(self):
        shape = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 3.0]])
        scaled = scale(shape)

        np.testing.assert_almost_equal(np.linalg.norm(scaled), 1.0)

    def test_scale_handles_zero_shape(self):
        shape = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        scaled = scale(shape)

        np.testing.assert_array_equal(scaled, shape)


class TestCentroidSize:
    def test_centroid_size_scaled_shape(self):
        shape = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        size1 = centroid_size(shape)
        size2 = centroid_size(shape * 2)

        np.testing.assert_almost_equal(size2, size1 * 2)


class TestAlignSpecimen:
    def test_align_rotated_shape(self):
        ref = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0], [0.0, 0.0, 0.0]])
        rotated = np.dot(ref, rotation_about(2, np.pi / 2).T) + 3.0

        aligned, transform = align_specimen(rotated, ref)

        np.testing.assert_array_almost_equal(aligned, ref)
        np.testing.assert_array_almost_equal(transform.apply(rotated), aligned)

    def test_align_preserves_shape_without_scaling(self):
        ref = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        shape = np.array([[0.0, 0.0, 0.0], [0.0, 3.0, 0.0], [-3.0, 0.0, 0.0]])

        aligned, _ = align_specimen(shape, ref)

        # Pairwise distances should be preserved
        orig_dists = [np.linalg.norm(shape[i] - shape[j]) for i in range(3) for j in range(i + 1, 3)]
        aligned_dists = [np.linalg.norm(aligned[i] - aligned[j]) for i in range(3) for j in range(i + 1, 3)]

        np.testing.assert_array_almost_equal(orig_dists, aligned_dists)

    def test_outlier_vertex_does_not_drag_fit(self):
        rng = np.random.default_rng(0)
        ref = rng.normal(size=(40, 3))
        shape = ref + np.array([1.0, 2.0, 3.0])
        shape[0] += np.array([50.0, 0.0, 0.0])

        plain, _ = align_specimen(shape, ref)
        robust, _ = align_specimen(shape, ref, reject_outliers=True)

        inliers = slice(1, None)
        np.testing.assert_array_almost_equal(robust[inliers], ref[inliers])
        assert np.abs(plain[inliers] - ref[inliers]).max() > 0.1

    def test_no_outliers_keeps_full_fit(self):
        rng = np.random.default_rng(1)
        ref = rng.normal(size=(20, 3))
        shape = np.dot(ref, rotation_about(0, 0.4).T)

        plain, _ = align_specimen(shape, ref)
        robust, _ = align_specimen(shape, ref, reject_outliers=True)

        np.testing.assert_array_almost_equal(robust, plain)


class TestMeanShape:
    def test_mean_shape_multiple_specimens(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [4, 0, 0], [0, 4, 0]]

        mean = mean_shape(landmarks)

        expected = np.array([[0, 0, 0], [3, 0, 0], [0, 3, 0]])
        np.testing.assert_array_equal(mean, expected)


class TestProcrustesDistance:
    def test_procrustes_distance_identical(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]

        ref = mean_shape(landmarks)
        dists = procrustes_distance(landmarks, ref)

        np.testing.assert_array_almost_equal(dists, [0.0, 0.0])

    def test_procrustes_distance_different(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        ref = landmarks[:, :, 0]
        dists = procrustes_distance(landmarks, ref)

        assert dists[0] == 0.0
        assert dists[1] > 0.0


class TestGeneralizedProcrustes:
    def test_gpa_aligns_translated_and_rotated_shapes(self):
        rng = np.random.default_rng(2)
        base = rng.normal(size=(20, 3))
        landmarks = np.stack(
            [np.dot(base, rotation_about(i % 3, 0.5 * i).T) + i for i in range(4)], axis=2
        )

        result = generalized_procrustes(landmarks)

        assert result.converged
        for i in range(1, 4):
            diff = np.linalg.norm(result.aligned[:, :, 0] - result.aligned[:, :, i])
            assert diff < 1e-6

    def test_spheres_scale_to_mean_size(self):
        sphere = icosphere_mesh(2).vertices
        factors = np.array([0.5, 1.0, 1.5, 2.0, 3.0])
        shift = np.array([1.0, -2.0, 0.5])
        landmarks = np.stack([f * sphere + i * shift for i, f in enumerate(factors)], axis=2)

        result = generalized_procrustes(landmarks, GPAOptions(allow_scaling=True))

        np.testing.assert_almost_equal(
            centroid_size(result.mean_shape), factors.mean() * centroid_size(sphere)
        )
        for i in range(5):
            residual = np.abs(result.aligned[:, :, i] - result.mean_shape).max()
            assert residual < 1e-6

    def test_gpa_no_scale_preserves_size_differences(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        result = generalized_procrustes(landmarks, GPAOptions(allow_scaling=False))

        for i in range(2):
            np.testing.assert_almost_equal(
                centroid_size(result.aligned[:, :, i]), result.centroid_sizes[i]
            )

    def test_gpa_returns_centroid_sizes(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        result = generalized_procrustes(landmarks)

        assert len(result.centroid_sizes) == 2
        assert result.centroid_sizes[1] > result.centroid_sizes[0]

    def test_one_more_round_keeps_mean(self, population):
        options = GPAOptions(tolerance=1e-8, max_iterations=100)
        result = generalized_procrustes(population, options)

        realigned, _ = align_to_mean(
            result.aligned, result.mean_shape, allow_scaling=options.allow_scaling
        )
        new_mean = scale(center(mean_shape(realigned))) * centroid_size(result.mean_shape)

        assert result.converged

        change = np.linalg.norm(new_mean - result.mean_shape) / np.linalg.norm(new_mean)
        assert change < options.tolerance

    def test_scaled_mean_keeps_initial_size(self, population):
        centered = population - population.mean(axis=0)[None, :, :]
        initial_size = centroid_size(mean_shape(centered))

        result = generalized_procrustes(population, GPAOptions(tolerance=1e-8, max_iterations=100))

        assert result.converged
        assert centroid_size(result.mean_shape) == pytest.approx(initial_size)
        for i in range(population.shape[2]):
            assert centroid_size(result.aligned[:, :, i]) == pytest.approx(initial_size)

    def test_scaled_mean_does_not_depend_on_iteration_cap(self, population):
        with pytest.warns(NonConvergenceWarning):
            short = generalized_procrustes(population, GPAOptions(max_iterations=5, tolerance=0.0))
        with pytest.warns(NonConvergenceWarning):
            long = generalized_procrustes(population, GPAOptions(max_iterations=200, tolerance=0.0))

        assert centroid_size(long.mean_shape) == pytest.approx(centroid_size(short.mean_shape))
        np.testing.assert_allclose(long.mean_shape, short.mean_shape, atol=1e-4)

    def test_transforms_map_input_to_aligned(self, population):
        result = generalized_procrustes(population)

        for i in range(population.shape[2]):
            np.testing.assert_array_almost_equal(
                result.transforms[i].apply(population[:, :, i]), result.aligned[:, :, i]
            )

    def test_gpa_does_not_modify_input(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[10, 10, 10], [11, 10, 10], [10, 11, 10]]
        original = landmarks.copy()

        generalized_procrustes(landmarks)

        np.testing.assert_array_equal(landmarks, original)

    def test_accepts_correspondence_set_and_axis_matrices(self, population):
        x, y, z = population[:, 0, :], population[:, 1, :], population[:, 2, :]
        from_axes = generalized_procrustes(stack_axes(x, y, z))
        from_set = generalized_procrustes(CorrespondenceSet(population))

        np.testing.assert_array_almost_equal(from_axes.mean_shape, from_set.mean_shape)

    def test_reference_specimen(self, population):
        result = generalized_procrustes(population, GPAOptions(reference=3))

        assert result.aligned.shape == population.shape

    def test_mismatched_vertex_counts_raise(self):
        rng = np.random.default_rng(3)
        specimens = [rng.normal(size=(25891, 3)), rng.normal(size=(31818, 3))]

        with pytest.raises(TopologyMismatch, match="25891"):
            generalized_procrustes(specimens)
