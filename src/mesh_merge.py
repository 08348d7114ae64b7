"""
Skinned mesh merge orchestration.

Sequences the merge stages for a list of source parts:

    LOD count -> material atlas -> unified hierarchy (+ pose overrides)
    -> attachment points -> bone remap tables -> per-LOD buffers
    -> bounds and inverse bind matrices

A merge that cannot determine a LOD count fails through MergeResult;
violated input contracts raise MergeContractError. The output mesh is only
assembled once every stage has succeeded.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from attachment_merger import apply_attachment_overrides, merge_attachment_points
from joint_merger import (
    PoseOverride,
    apply_pose_overrides,
    attach_vertex_transform,
    build_bone_remap,
    build_unified_hierarchy,
)
from lod_builder import build_lod_model
from material_merger import merge_materials
from merge_context import MergeConfig, MergeContext, MergeContractError
from skeleton import INDEX_NONE, Transform, component_space_transforms, compute_inverse_bind_matrices
from skinned_mesh import (
    LODModel,
    Material,
    SectionMapping,
    SkeletonAsset,
    SkinnedMesh,
    SourcePart,
)
from texture_compositor import NumpyTextureCompositor, TextureCompositor

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Outcome of a merge. ``mesh`` is None whenever ``success`` is False."""
    success: bool
    mesh: Optional[SkinnedMesh] = None
    lod_count: int = 0
    failure_reason: str = ""
    atlas_utilization: float = 0.0
    skipped_textures: int = 0
    warnings: List[str] = field(default_factory=list)


def calculate_lod_count(meshes: Sequence[Optional[SkinnedMesh]], strip_top_lods: int = 0) -> int:
    """Number of LODs the merged mesh gets.

    The smallest source LOD count minus *strip_top_lods*, never below 1.
    Returns -1 when no source mesh is present.
    """
    counts = [mesh.lod_count() for mesh in meshes if mesh is not None]
    if not counts:
        return -1
    return max(1, min(counts) - strip_top_lods)


class SkeletalMeshMerge:
    """Merges several skinned meshes into one.

    Args:
        parts: merge inputs; parts whose mesh is None are skipped.
        base_material: template the merged material is instantiated from.
        section_mappings: optional external material ids per source. Only
            used when one mapping is given for every part.
        config: merge configuration.
        compositor: texture copy service; a NumpyTextureCompositor is used
            when none is given.
        target_skeleton_asset: shared skeleton asset of the output mesh.
        name: name of the output mesh.
    """

    def __init__(
        self,
        parts: Sequence[SourcePart],
        base_material: Material,
        section_mappings: Optional[Sequence[SectionMapping]] = None,
        config: Optional[MergeConfig] = None,
        compositor: Optional[TextureCompositor] = None,
        target_skeleton_asset: Optional[SkeletonAsset] = None,
        name: str = "merged_mesh",
    ):
        self.parts = list(parts)
        self.base_material = base_material
        self.section_mappings = list(section_mappings or [])
        self.config = config or MergeConfig()
        self.compositor = compositor or NumpyTextureCompositor()
        self.target_skeleton_asset = target_skeleton_asset
        self.name = name

    def merge(self, pose_overrides: Optional[Sequence[PoseOverride]] = None) -> MergeResult:
        """Run every merge stage.

        Raises:
            MergeContractError: a source violates an input contract (no
                LODs, empty hierarchy, bone map outside its hierarchy,
                section over the bone budget, missing main texture).
        """
        pose_overrides = list(pose_overrides or [])
        meshes = [part.mesh for part in self.parts]

        lod_count = calculate_lod_count(meshes, self.config.strip_top_lods)
        if lod_count < 0:
            reason = "No source meshes to merge"
            logger.warning("Merge of '%s' failed: %s", self.name, reason)
            return MergeResult(success=False, failure_reason=reason, lod_count=0)

        for mesh in meshes:
            if mesh is not None and mesh.lod_count() == 0:
                raise MergeContractError(f"Source mesh '{mesh.name}' has no LODs")

        context = MergeContext(
            parts=self.parts,
            config=self.config,
            section_mappings=self.section_mappings,
        )

        materials = merge_materials(meshes, self.base_material, self.config, self.compositor)
        context.merged_material = materials.merged_material
        context.uv_transforms_per_mesh = materials.uv_transforms_per_mesh

        unified = build_unified_hierarchy(meshes, union=self.config.union_hierarchies)
        if len(unified) == 0:
            raise MergeContractError("Every source mesh has an empty joint hierarchy")
        apply_pose_overrides(unified, pose_overrides)
        unified.freeze()
        context.unified_hierarchy = unified

        attachment_points = merge_attachment_points(meshes, self.target_skeleton_asset)
        apply_attachment_overrides(attachment_points, pose_overrides)

        warnings = self._build_remap_tables(context)
        context.has_vertex_colors = any(mesh is not None and mesh.has_vertex_colors for mesh in meshes)

        lods: List[LODModel] = []
        for lod_index in range(lod_count):
            source_lod = lod_index + self.config.strip_top_lods
            lods.append(build_lod_model(context, source_lod))

        bounds = None
        for mesh in meshes:
            if mesh is None:
                continue
            bounds = mesh.get_bounds() if bounds is None else bounds + mesh.get_bounds()

        merged = SkinnedMesh(
            name=self.name,
            skeleton=unified,
            materials=context.material_slots,
            lods=lods,
            attachment_points=attachment_points,
            skeleton_asset=self.target_skeleton_asset,
            bounds=bounds,
            inverse_bind_matrices=compute_inverse_bind_matrices(unified),
        )
        logger.info(
            "Merged %d sources into '%s': %d LODs, %d joints, %d materials",
            sum(mesh is not None for mesh in meshes), self.name,
            len(lods), len(unified), len(context.material_slots),
        )
        return MergeResult(
            success=True,
            mesh=merged,
            lod_count=lod_count,
            atlas_utilization=materials.utilization,
            skipped_textures=materials.skipped_textures,
            warnings=warnings,
        )

    def _build_remap_tables(self, context: MergeContext) -> List[str]:
        """Fill per-source bone remaps and vertex transforms."""
        warnings: List[str] = []
        unified = context.unified_hierarchy
        unified_cs = component_space_transforms(unified)

        for part in context.parts:
            if part.mesh is None:
                context.bone_remaps.append(None)
                context.vertex_transforms.append(Transform.identity())
                continue

            mesh = part.mesh
            attach_index = unified.find_index(part.attach_joint_name)
            if part.attach_joint_name is not None and attach_index == INDEX_NONE:
                message = (
                    f"Attach joint '{part.attach_joint_name}' of '{mesh.name}' "
                    f"is not in the unified hierarchy"
                )
                logger.warning("%s", message)
                warnings.append(message)

            context.bone_remaps.append(build_bone_remap(mesh.skeleton, unified, part.attach_joint_name))
            if attach_index != INDEX_NONE:
                context.vertex_transforms.append(
                    attach_vertex_transform(part.vertex_transform, mesh.skeleton, unified_cs[attach_index])
                )
            else:
                context.vertex_transforms.append(part.vertex_transform)
        return warnings


def merge_skeletal_meshes(
    parts: Sequence[SourcePart],
    base_material: Material,
    section_mappings: Optional[Sequence[SectionMapping]] = None,
    config: Optional[MergeConfig] = None,
    compositor: Optional[TextureCompositor] = None,
    target_skeleton_asset: Optional[SkeletonAsset] = None,
    pose_overrides: Optional[Sequence[PoseOverride]] = None,
    name: str = "merged_mesh",
) -> MergeResult:
    """Functional wrapper around SkeletalMeshMerge."""
    merger = SkeletalMeshMerge(
        parts,
        base_material,
        section_mappings=section_mappings,
        config=config,
        compositor=compositor,
        target_skeleton_asset=target_skeleton_asset,
        name=name,
    )
    return merger.merge(pose_overrides=pose_overrides)
