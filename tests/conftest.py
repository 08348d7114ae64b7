"""
Shared test fixtures for skinned mesh merge tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from joint_merger import build_bone_remap, build_unified_hierarchy
from merge_context import MergeConfig, MergeContext
from procedural_parts import (
    canonical_skeleton,
    make_body,
    make_glove,
    make_hat,
    make_material,
)
from skeleton import Transform
from skinned_mesh import Material, SourcePart
from texture_compositor import NumpyTextureCompositor


@pytest.fixture
def skeleton():
    """The canonical 8-joint character skeleton."""
    return canonical_skeleton()


@pytest.fixture
def body():
    return make_body()


@pytest.fixture
def glove():
    return make_glove("r")


@pytest.fixture
def hat():
    return make_hat()


@pytest.fixture
def base_material():
    """Template material for merged outputs (grey 4x4 textures)."""
    return make_material("character_base", (4, 4), (128, 128, 128, 255))


@pytest.fixture
def compositor():
    return NumpyTextureCompositor()


@pytest.fixture
def small_atlas_config():
    """256x256 atlas, everything else default."""
    return MergeConfig(atlas_size=(256, 256))


@pytest.fixture
def character_parts(body, glove, hat):
    """Body, right glove, and a hat attached to the head joint."""
    return [
        SourcePart(body),
        SourcePart(glove),
        SourcePart(hat, attach_joint_name="head"),
    ]


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def make_context():
    """Builder for a merge context with remap tables filled in but no
    atlas transforms."""

    def build(meshes, config=None, section_mappings=None):
        unified = build_unified_hierarchy(meshes)
        return MergeContext(
            parts=[SourcePart(mesh) for mesh in meshes],
            config=config or MergeConfig(),
            section_mappings=section_mappings or [],
            merged_material=Material(name="merged"),
            uv_transforms_per_mesh=[[] for _ in meshes],
            unified_hierarchy=unified,
            bone_remaps=[build_bone_remap(mesh.skeleton, unified) for mesh in meshes],
            vertex_transforms=[Transform.identity() for _ in meshes],
            has_vertex_colors=any(mesh.has_vertex_colors for mesh in meshes),
        )

    return build
