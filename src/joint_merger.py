"""
Joint hierarchy merging and bone remapping.

Builds the unified joint hierarchy for a merge, the per-source tables that
translate source joint indices into it, and applies reference-pose
overrides taken from other meshes.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from skeleton import INDEX_NONE, JointHierarchy, Transform, component_space_transforms
from skinned_mesh import SkinnedMesh

logger = logging.getLogger(__name__)

# How far up the source hierarchy an unmatched joint looks for a named ancestor.
MAX_ANCESTOR_SEARCH = 3
ROOT_INDEX = 0


class OverrideMode(Enum):
    """Which joints of an override entry take the source pose."""
    BONE_ONLY = "bone_only"
    CHILDREN_ONLY = "children_only"
    BOTH = "both"


@dataclass
class BoneOverride:
    joint_name: str
    mode: OverrideMode = OverrideMode.BOTH


@dataclass
class PoseOverride:
    """Take the bind pose of the listed joints from *mesh*."""
    mesh: SkinnedMesh
    overrides: List[BoneOverride] = field(default_factory=list)


def build_unified_hierarchy(
    meshes: Sequence[Optional[SkinnedMesh]],
    union: bool = False,
) -> JointHierarchy:
    """Unified hierarchy for a merge.

    The first non-empty source hierarchy is taken verbatim. With *union*
    set, joints of later sources whose name is missing but whose parent
    name is present are appended as well.
    """
    unified = JointHierarchy()
    for mesh in meshes:
        if mesh is None or len(mesh.skeleton) == 0:
            continue
        if len(unified) == 0:
            unified = mesh.skeleton.copy()
            continue
        if not union:
            break
        added = _append_missing_joints(unified, mesh.skeleton)
        if added:
            logger.debug("Added %d joints from '%s' to the unified hierarchy", added, mesh.name)
    return unified


def _append_missing_joints(target: JointHierarchy, source: JointHierarchy) -> int:
    added = 0
    for index in range(1, len(source)):
        name = source.name_of(index)
        if target.find_index(name) != INDEX_NONE:
            continue
        parent_name = source.name_of(source.parent_index(index))
        target_parent = target.find_index(parent_name)
        if target_parent == INDEX_NONE:
            continue
        target.add_joint(name, target_parent, source.local_transform(index))
        added += 1
    return added


def build_bone_remap(
    source: JointHierarchy,
    unified: JointHierarchy,
    attach_joint_name: Optional[str] = None,
) -> List[int]:
    """Map every source joint index to a unified joint index.

    A source plugged into an existing attach joint binds rigidly: every
    joint maps to the attach joint. Otherwise each joint takes its
    same-named unified joint, else the nearest named ancestor within
    MAX_ANCESTOR_SEARCH levels, else the root.
    """
    attach_index = unified.find_index(attach_joint_name)
    if attach_index != INDEX_NONE:
        return [attach_index] * len(source)

    remap: List[int] = []
    fallbacks = 0
    for index in range(len(source)):
        dest = unified.find_index(source.name_of(index))

        if dest == INDEX_NONE:
            parent = source.parent_index(index)
            for _ in range(MAX_ANCESTOR_SEARCH):
                if parent == INDEX_NONE:
                    break
                dest = unified.find_index(source.name_of(parent))
                if dest != INDEX_NONE:
                    break
                parent = source.parent_index(parent)

        if dest == INDEX_NONE:
            dest = ROOT_INDEX
            fallbacks += 1

        remap.append(dest)

    if fallbacks:
        logger.debug("%d source joints had no match and were mapped to the root", fallbacks)
    return remap


def attach_vertex_transform(
    vertex_transform: Transform,
    source: JointHierarchy,
    attach_component_space: Transform,
) -> Transform:
    """Vertex transform of a source plugged into an attach joint.

    Vertices are taken out of the source's root space and into the attach
    joint's component space.
    """
    source_inverse = Transform.identity()
    source_cs = component_space_transforms(source)
    if source_cs:
        source_inverse = source_cs[0].inverse()
    return vertex_transform * source_inverse * attach_component_space


def override_joint_indices(source: JointHierarchy, override: BoneOverride) -> List[int]:
    """Source joints affected by *override*: the named joint and/or its
    descendants. Empty when the name is not in *source*."""
    index = source.find_index(override.joint_name)
    if index == INDEX_NONE:
        return []
    affected: List[int] = []
    if override.mode != OverrideMode.CHILDREN_ONLY:
        affected.append(index)
    if override.mode != OverrideMode.BONE_ONLY:
        affected.extend(source.descendants(index))
    return affected


def apply_pose_overrides(target: JointHierarchy, overrides: Sequence[PoseOverride]) -> int:
    """Copy bind transforms from override meshes onto same-named joints.

    Names absent from *target* are skipped. Returns the number of joints
    written.
    """
    applied = 0
    for pose_override in overrides:
        source = pose_override.mesh.skeleton
        for bone_override in pose_override.overrides:
            for source_index in override_joint_indices(source, bone_override):
                target_index = target.find_index(source.name_of(source_index))
                if target_index == INDEX_NONE:
                    continue
                target.set_local_transform(target_index, source.local_transform(source_index))
                applied += 1
    if applied:
        logger.info("Applied %d reference pose overrides", applied)
    return applied
