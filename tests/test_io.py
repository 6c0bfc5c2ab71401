"""Tests for I/O module."""

import numpy as np
import pytest

from mesh_ssm import Mesh, get_filenames, load_meshes, read_mesh, write_mesh


@pytest.fixture
def mesh_dir(tmp_path, sphere, cube):
    """Directory with two PLY meshes and one unrelated file."""
    write_mesh(sphere, tmp_path / "b_sphere.ply")
    write_mesh(cube, tmp_path / "a_cube.ply")
    (tmp_path / "notes.txt").write_text("not a mesh")
    return tmp_path


class TestReadWriteMesh:
    @pytest.mark.parametrize("suffix", [".ply", ".obj", ".off"])
    def test_round_trip_keeps_vertex_order(self, tmp_path, sphere, suffix):
        filepath = tmp_path / f"sphere{suffix}"

        write_mesh(sphere, filepath)
        mesh = read_mesh(filepath)

        np.testing.assert_array_almost_equal(mesh.vertices, sphere.vertices)
        np.testing.assert_array_equal(mesh.faces, sphere.faces)

    def test_stl_vertices_are_merged(self, tmp_path, cube):
        filepath = tmp_path / "cube.stl"

        write_mesh(cube, filepath)
        mesh = read_mesh(filepath)

        assert mesh.n_vertices == 8
        assert mesh.n_faces == 12

    def test_read_nonexistent_file(self):
        with pytest.raises(FileNotFoundError):
            read_mesh("/nonexistent/file.stl")

    def test_read_unsupported_format(self, tmp_path):
        filepath = tmp_path / "file.xyz"
        filepath.write_text("data")

        with pytest.raises(ValueError, match="Unsupported file format"):
            read_mesh(filepath)

    def test_write_unsupported_format(self, tmp_path, cube):
        with pytest.raises(ValueError, match="Unsupported file format"):
            write_mesh(cube, tmp_path / "cube.fcsv")


class TestLoadMeshes:
    def test_load_from_directory_sorted(self, mesh_dir):
        meshes = load_meshes(mesh_dir)

        assert len(meshes) == 2
        assert all(isinstance(m, Mesh) for m in meshes)
        # a_cube sorts first
        assert meshes[0].n_vertices == 8
        assert meshes[1].n_vertices == 162

    def test_load_from_glob(self, mesh_dir):
        meshes = load_meshes(str(mesh_dir / "*_sphere.ply"))

        assert len(meshes) == 1

    def test_load_from_list(self, mesh_dir):
        meshes = load_meshes([mesh_dir / "b_sphere.ply", mesh_dir / "a_cube.ply"])

        assert [m.n_vertices for m in meshes] == [8, 162]

    def test_no_files_found(self, tmp_path):
        with pytest.raises(ValueError, match="No mesh files found"):
            load_meshes(str(tmp_path / "*.stl"))


class TestGetFilenames:
    def test_get_filenames_from_directory(self, mesh_dir):
        assert get_filenames(mesh_dir) == ["a_cube.ply", "b_sphere.ply"]

    def test_get_filenames_from_list(self, mesh_dir):
        names = get_filenames([mesh_dir / "b_sphere.ply", mesh_dir / "a_cube.ply"])

        assert names == ["a_cube.ply", "b_sphere.ply"]
