"""
Configuration, per-merge state and error types for skinned mesh merging.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from atlas_packer import UVTransform
from skeleton import JointHierarchy, Transform
from skinned_mesh import MAX_TEXCOORDS, Material, MaterialSlot, SectionMapping, SkinnedMesh, SourcePart

if TYPE_CHECKING:
    from section_grouper import FoldPolicy

# Per-draw-call bone ceilings of the supported shader platforms.
MAX_GPU_SKIN_BONES = 256
MOBILE_MAX_GPU_SKIN_BONES = 75

NO_MATERIAL_ID = -1

MAIN_TEXTURE = "MainTexture"
NORMAL_MAP = "NormalMap"


class MergeError(Exception):
    """Base exception for mesh merge errors."""
    pass


class MergeContractError(MergeError, ValueError):
    """A merge precondition was violated by the caller's input."""
    pass


class BufferAccess(Enum):
    """Whether merged buffers must stay CPU-readable after upload."""
    GPU_ONLY = "gpu_only"
    FORCE_CPU_AND_GPU = "force_cpu_and_gpu"


@dataclass(frozen=True)
class MergeConfig:
    """Configuration for one skinned mesh merge."""

    bone_budget: int = MAX_GPU_SKIN_BONES
    atlas_size: Tuple[int, int] = (1024, 1024)
    atlas_texture_names: Tuple[str, ...] = (MAIN_TEXTURE, NORMAL_MAP)
    atlas_normal_flags: Tuple[bool, ...] = (False, True)
    atlas_uv_channel: int = 0  # UV set sampled by the atlas textures
    merge_atlas: bool = True
    strip_top_lods: int = 0
    buffer_access: BufferAccess = BufferAccess.GPU_ONLY
    full_precision_uvs: bool = True
    union_hierarchies: bool = False
    fold_policy: Optional["FoldPolicy"] = None

    def __post_init__(self):
        if self.bone_budget < 1:
            raise ValueError(f"bone_budget must be positive, got {self.bone_budget}")
        if self.strip_top_lods < 0:
            raise ValueError(f"strip_top_lods must be >= 0, got {self.strip_top_lods}")
        if not 0 <= self.atlas_uv_channel < MAX_TEXCOORDS:
            raise ValueError(
                f"atlas_uv_channel must be in [0, {MAX_TEXCOORDS}), got {self.atlas_uv_channel}"
            )
        if len(self.atlas_texture_names) != len(self.atlas_normal_flags):
            raise ValueError("atlas_texture_names and atlas_normal_flags must have the same length")
        if self.merge_atlas and not self.atlas_texture_names:
            raise ValueError("merge_atlas requires at least one atlas texture name")

    @property
    def needs_cpu_access(self) -> bool:
        return self.buffer_access == BufferAccess.FORCE_CPU_AND_GPU


@dataclass
class MergeContext:
    """State owned by a single merge call.

    ``material_ids`` runs parallel to ``material_slots`` and resolves merged
    material identity across every LOD of this merge.
    """
    parts: List[SourcePart]
    config: MergeConfig
    section_mappings: List[SectionMapping] = field(default_factory=list)
    merged_material: Optional[Material] = None
    uv_transforms_per_mesh: List[List[UVTransform]] = field(default_factory=list)
    unified_hierarchy: Optional[JointHierarchy] = None
    bone_remaps: List[Optional[List[int]]] = field(default_factory=list)
    vertex_transforms: List[Transform] = field(default_factory=list)
    material_slots: List[MaterialSlot] = field(default_factory=list)
    material_ids: List[int] = field(default_factory=list)
    has_vertex_colors: bool = False

    @property
    def meshes(self) -> List[Optional[SkinnedMesh]]:
        return [part.mesh for part in self.parts]

    def section_material_id(self, mesh_index: int, section_index: int) -> int:
        """External material id for a section, or NO_MATERIAL_ID.

        Mappings only apply when one is supplied for every source.
        """
        if len(self.section_mappings) != len(self.parts):
            return NO_MATERIAL_ID
        section_ids = self.section_mappings[mesh_index].section_ids
        if 0 <= section_index < len(section_ids):
            return int(section_ids[section_index])
        return NO_MATERIAL_ID

    def uv_transform_for(self, mesh_index: int, material_index: int) -> Optional[UVTransform]:
        if mesh_index >= len(self.uv_transforms_per_mesh):
            return None
        transforms = self.uv_transforms_per_mesh[mesh_index]
        if 0 <= material_index < len(transforms):
            return transforms[material_index]
        return None
