"""
Section grouping under a per-draw-call bone budget.

Every source render section of a LOD is folded into the first compatible
merge group whose merged bone map still fits the budget; sections that
fit nowhere seed a new group. Compatibility is a pluggable FoldPolicy.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from atlas_packer import UVTransform
from merge_context import NO_MATERIAL_ID, MergeContext, MergeContractError
from skeleton import Transform
from skinned_mesh import MAX_TEXCOORDS, LODModel, Material, RenderSection, SkinnedMesh

logger = logging.getLogger(__name__)


@dataclass
class MergeSectionInfo:
    """One source section contributing to a merge group."""
    mesh_index: int
    mesh: SkinnedMesh
    source_lod: LODModel
    section: RenderSection
    material_index: int
    uv_transforms: List[Optional[UVTransform]]
    vertex_transform: Transform
    bone_map_to_merged: List[int] = field(default_factory=list)


@dataclass
class NewSectionInfo:
    """A merge group: becomes one render section of the merged LOD."""
    material: Material
    material_id: int
    source_material: Optional[Material]
    merged_bone_map: List[int] = field(default_factory=list)
    merge_sections: List[MergeSectionInfo] = field(default_factory=list)


@dataclass
class SectionCandidate:
    """A source section about to be grouped, with its remapped bone map."""
    mesh_index: int
    section_index: int
    material_id: int
    material: Material
    bone_map: List[int]


class FoldPolicy(ABC):
    """Decides whether a candidate may join an existing group at all.

    The bone budget is checked separately, after the policy accepts.
    """

    @abstractmethod
    def can_fold(self, group: NewSectionInfo, candidate: SectionCandidate) -> bool:
        ...


class BudgetOnlyFoldPolicy(FoldPolicy):
    """Any section may join any group; only the bone budget decides."""

    def can_fold(self, group: NewSectionInfo, candidate: SectionCandidate) -> bool:
        return True


class MaterialAwareFoldPolicy(FoldPolicy):
    """Sections join a group only when their materials match.

    With an external material id the ids must match; otherwise the source
    materials must be the same object.
    """

    def can_fold(self, group: NewSectionInfo, candidate: SectionCandidate) -> bool:
        if candidate.material_id == NO_MATERIAL_ID:
            return (group.material_id == NO_MATERIAL_ID
                    and candidate.material is group.source_material)
        return candidate.material_id == group.material_id


def merge_bone_map(merged: Sequence[int], bone_map: Sequence[int]) -> Tuple[List[int], List[int]]:
    """Fold *bone_map* into a copy of *merged*.

    Returns:
        (new merged map in first-seen order, table mapping each position of
        *bone_map* to its position in the new merged map)
    """
    result = list(merged)
    positions = {}
    for i, bone in enumerate(result):
        positions.setdefault(bone, i)
    translation: List[int] = []
    for bone in bone_map:
        position = positions.get(bone)
        if position is None:
            position = len(result)
            result.append(bone)
            positions[bone] = position
        translation.append(position)
    return result, translation


def remap_bone_map(bone_map: Sequence[int], remap: Sequence[int]) -> List[int]:
    """Translate a section bone map through a source-to-unified table."""
    result = []
    for bone in bone_map:
        if not 0 <= bone < len(remap):
            raise MergeContractError(
                f"Bone map entry {bone} is outside the source hierarchy ({len(remap)} joints)"
            )
        result.append(remap[bone])
    return result


def resolve_section_material_index(mesh: SkinnedMesh, lod_index: int, section: RenderSection) -> int:
    """Material slot used by *section* when building merged LOD *lod_index*.

    The LOD material map is read from the source LOD that feeds *lod_index*
    and applies whenever the merged LOD is above zero.
    """
    material_index = section.material_index
    lod_material_map = mesh.render_data(lod_index).info.lod_material_map
    if lod_index > 0 and 0 <= section.material_index < len(lod_material_map):
        material_index = lod_material_map[section.material_index]
    material_index = max(0, min(material_index, len(mesh.materials) - 1))
    return material_index


def generate_section_groups(
    context: MergeContext,
    lod_index: int,
    policy: Optional[FoldPolicy] = None,
) -> List[NewSectionInfo]:
    """Group every source section of *lod_index* into merge groups.

    Args:
        context: merge state with remap tables, vertex/UV transforms and
            the merged material already filled in.
        lod_index: source LOD to read; sources with fewer LODs use their
            coarsest one.
        policy: fold compatibility; defaults to the context's configured
            policy, else BudgetOnlyFoldPolicy.
    """
    if policy is None:
        policy = context.config.fold_policy or BudgetOnlyFoldPolicy()
    budget = context.config.bone_budget

    groups: List[NewSectionInfo] = []
    for mesh_index, part in enumerate(context.parts):
        mesh = part.mesh
        if mesh is None:
            continue

        source_lod_index = mesh.clamp_lod_index(lod_index)
        source_lod = mesh.lods[source_lod_index]
        remap = context.bone_remaps[mesh_index]
        vertex_transform = context.vertex_transforms[mesh_index]

        for section_index, section in enumerate(source_lod.sections):
            material_index = resolve_section_material_index(mesh, lod_index, section)
            source_material = mesh.materials[material_index].material if mesh.materials else None
            candidate = SectionCandidate(
                mesh_index=mesh_index,
                section_index=section_index,
                material_id=context.section_material_id(mesh_index, section_index),
                material=source_material,
                bone_map=remap_bone_map(section.bone_map, remap),
            )

            info = MergeSectionInfo(
                mesh_index=mesh_index,
                mesh=mesh,
                source_lod=source_lod,
                section=section,
                material_index=material_index,
                uv_transforms=_section_uv_transforms(context, mesh_index, material_index),
                vertex_transform=vertex_transform,
            )

            folded = False
            for group in groups:
                if not policy.can_fold(group, candidate):
                    continue
                merged_map, translation = merge_bone_map(group.merged_bone_map, candidate.bone_map)
                if len(merged_map) > budget:
                    continue
                info.bone_map_to_merged = translation
                group.merge_sections.append(info)
                group.merged_bone_map = merged_map
                folded = True
                break

            if folded:
                continue

            if len(candidate.bone_map) > budget:
                raise MergeContractError(
                    f"Section {section_index} of '{mesh.name}' references "
                    f"{len(candidate.bone_map)} bones, over the budget of {budget}"
                )
            group = NewSectionInfo(
                material=context.merged_material,
                material_id=candidate.material_id,
                source_material=source_material,
                merged_bone_map=list(candidate.bone_map),
            )
            # merged map == section map, so the translation is the identity
            info.bone_map_to_merged = list(range(len(candidate.bone_map)))
            group.merge_sections.append(info)
            groups.append(group)

    logger.debug(
        "LOD %d: %d merge groups from %d source sections",
        lod_index, len(groups), sum(len(g.merge_sections) for g in groups),
    )
    return groups


def _section_uv_transforms(
    context: MergeContext,
    mesh_index: int,
    material_index: int,
) -> List[Optional[UVTransform]]:
    """Per-channel UV remaps: the slot's atlas transform on the atlas channel."""
    transforms: List[Optional[UVTransform]] = [None] * MAX_TEXCOORDS
    atlas_transform = context.uv_transform_for(mesh_index, material_index)
    channel = context.config.atlas_uv_channel
    if atlas_transform is not None and 0 <= channel < MAX_TEXCOORDS:
        transforms[channel] = atlas_transform
    return transforms
