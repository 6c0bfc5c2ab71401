"""Tests for correspondence module."""

import numpy as np
import pytest

from mesh_ssm import CorrespondenceSet, Mesh, TopologyMismatch, stack_axes
from mesh_ssm.correspondence import as_landmark_array, check_topology


class TestCheckTopology:
    def test_common_count(self):
        assert check_topology([10, 10, 10]) == 10

    def test_message_lists_distinct_counts(self):
        with pytest.raises(TopologyMismatch) as excinfo:
            check_topology([25891, 31818, 25891])

        assert "25891" in str(excinfo.value)
        assert "31818" in str(excinfo.value)
        assert excinfo.value.vertex_counts == (25891, 31818, 25891)

    def test_mismatch_is_a_value_error(self):
        with pytest.raises(ValueError):
            check_topology([3, 4])

    def test_empty(self):
        with pytest.raises(ValueError):
            check_topology([])


class TestStackAxes:
    def test_round_trip_with_as_xyz(self):
        rng = np.random.default_rng(0)
        x, y, z = rng.normal(size=(3, 12, 4))

        population = CorrespondenceSet.from_xyz(x, y, z)
        xx, yy, zz = population.as_xyz()

        np.testing.assert_array_equal(xx, x)
        np.testing.assert_array_equal(yy, y)
        np.testing.assert_array_equal(zz, z)
        np.testing.assert_array_equal(population.specimen(2)[:, 1], y[:, 2])

    def test_vertex_count_mismatch(self):
        with pytest.raises(TopologyMismatch):
            stack_axes(np.zeros((5, 2)), np.zeros((6, 2)), np.zeros((5, 2)))

    def test_specimen_count_mismatch(self):
        with pytest.raises(ValueError):
            stack_axes(np.zeros((5, 2)), np.zeros((5, 3)), np.zeros((5, 2)))


class TestCorrespondenceSet:
    def test_from_meshes_takes_faces(self, sphere):
        shifted = sphere.with_vertices(sphere.vertices + 1.0)

        population = CorrespondenceSet.from_shapes([sphere, shifted], names=["a", "b"])

        assert population.n_specimens == 2
        assert population.n_vertices == sphere.n_vertices
        np.testing.assert_array_equal(population.faces, sphere.faces)
        assert isinstance(population.mesh(1), Mesh)

    def test_from_shapes_rejects_mismatch(self):
        with pytest.raises(TopologyMismatch):
            CorrespondenceSet.from_shapes([np.zeros((4, 3)), np.zeros((5, 3))])

    def test_names_must_match_specimens(self):
        with pytest.raises(ValueError):
            CorrespondenceSet(np.zeros((4, 3, 2)), names=["only"])

    def test_faces_must_index_vertices(self):
        with pytest.raises(ValueError):
            CorrespondenceSet(np.zeros((4, 3, 2)), faces=np.array([[0, 1, 9]]))

    def test_mesh_without_faces(self):
        with pytest.raises(ValueError):
            CorrespondenceSet(np.zeros((4, 3, 2))).mesh(0)


class TestAsLandmarkArray:
    def test_copies_input_array(self):
        landmarks = np.zeros((4, 3, 2))

        result = as_landmark_array(landmarks)
        result[0, 0, 0] = 1.0

        assert landmarks[0, 0, 0] == 0.0

    def test_rejects_wrong_dimension(self):
        with pytest.raises(ValueError):
            as_landmark_array(np.zeros((4, 2, 3)))

    def test_rejects_empty_sequence(self):
        with pytest.raises(ValueError):
            as_landmark_array([])
