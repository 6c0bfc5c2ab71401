"""
I/O functions for reading and writing surface meshes.

Supports the triangle mesh formats handled by trimesh:
- STL (.stl), ASCII and binary
- Stanford PLY (.ply)
- Wavefront OBJ (.obj)
- Object File Format (.off)
"""

from __future__ import annotations

import glob as glob_module
import logging
from pathlib import Path

import numpy as np
import trimesh

from mesh_ssm.mesh import Mesh, clean_mesh

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".stl", ".ply", ".obj", ".off")


def _check_suffix(filepath: Path) -> None:
    suffix = filepath.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: {', '.join(SUPPORTED_SUFFIXES)}"
        )


def read_mesh(filepath: str | Path, clean: bool = True) -> Mesh:
    """Read a triangle mesh from a file.

    Automatically detects the file format based on extension.

    Args:
        filepath: Path to the mesh file
        clean: Merge duplicate vertices (STL stores every triangle
            separately) and drop degenerate faces and unused vertices

    Returns:
        The mesh

    Raises:
        ValueError: If file format is not supported
        FileNotFoundError: If file does not exist
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")
    _check_suffix(filepath)

    loaded = trimesh.load(filepath, force="mesh", process=False)
    mesh = Mesh(
        vertices=np.asarray(loaded.vertices, dtype=float),
        faces=np.asarray(loaded.faces, dtype=np.int64),
    )
    if clean:
        mesh = clean_mesh(mesh)
    logger.debug("Read %s: %d vertices, %d faces", filepath, mesh.n_vertices, mesh.n_faces)
    return mesh


def write_mesh(mesh: Mesh, filepath: str | Path) -> None:
    """Write a triangle mesh to a file.

    Args:
        mesh: Mesh to write
        filepath: Output file path; the extension selects the format

    Raises:
        ValueError: If file format is not supported
    """
    filepath = Path(filepath)
    _check_suffix(filepath)
    trimesh.Trimesh(vertices=mesh.vertices, faces=mesh.faces, process=False).export(filepath)


def _resolve_files(source: str | Path | list[str] | list[Path]) -> list[Path]:
    if isinstance(source, (str, Path)):
        source_path = Path(source)
        if source_path.is_dir():
            files = [
                f for f in source_path.iterdir() if f.suffix.lower() in SUPPORTED_SUFFIXES
            ]
        else:
            # Treat as glob pattern
            files = [Path(f) for f in glob_module.glob(str(source))]
    else:
        files = [Path(f) for f in source]

    # Sort for reproducibility
    return sorted(files)


def load_meshes(
    source: str | Path | list[str] | list[Path],
    clean: bool = True,
) -> list[Mesh]:
    """Load multiple mesh files.

    Args:
        source: Either:
            - A glob pattern (e.g., "data/*.stl")
            - A directory path (loads all supported mesh files)
            - A list of file paths
        clean: Passed on to ``read_mesh``

    Returns:
        Meshes in sorted file order; vertex counts may differ

    Raises:
        ValueError: If no files found
    """
    files = _resolve_files(source)
    if not files:
        raise ValueError(f"No mesh files found: {source}")

    meshes = [read_mesh(f, clean=clean) for f in files]
    logger.info("Loaded %d meshes from %s", len(meshes), source)
    return meshes


def get_filenames(
    source: str | Path | list[str] | list[Path],
) -> list[str]:
    """Get list of filenames from a source (for labeling specimens).

    Args:
        source: Same as load_meshes

    Returns:
        List of filenames (without directory path)
    """
    return [f.name for f in _resolve_files(source)]
