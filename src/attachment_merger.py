"""
Attachment point merging.

Mesh-level points of every source come first, then skeleton-level points;
the first point seen under a name wins. Pose overrides can afterwards
re-place merged points from an override mesh's own points.
"""
import logging
from typing import List, Optional, Sequence

from joint_merger import PoseOverride, override_joint_indices
from skinned_mesh import AttachmentPoint, SkeletonAsset, SkinnedMesh

logger = logging.getLogger(__name__)


def merge_attachment_points(
    meshes: Sequence[Optional[SkinnedMesh]],
    target_skeleton_asset: Optional[SkeletonAsset] = None,
) -> List[AttachmentPoint]:
    """Merged, duplicated attachment points with unique names.

    Skeleton-level points already carried by *target_skeleton_asset* are
    not copied, since every mesh bound to that asset sees them anyway.
    """
    merged: List[AttachmentPoint] = []
    names = set()

    for mesh in meshes:
        if mesh is None:
            continue
        for point in mesh.attachment_points:
            _add_point(merged, names, point)

    for mesh in meshes:
        if mesh is None or mesh.skeleton_asset is None:
            continue
        for point in mesh.skeleton_asset.attachment_points:
            if (target_skeleton_asset is not None
                    and target_skeleton_asset.find_attachment_point(point.name) is not None):
                continue
            _add_point(merged, names, point)

    logger.debug("Merged %d attachment points", len(merged))
    return merged


def _add_point(merged: List[AttachmentPoint], names: set, point: AttachmentPoint) -> bool:
    if point.name in names:
        return False
    merged.append(point.duplicate())
    names.add(point.name)
    return True


def apply_attachment_overrides(
    points: List[AttachmentPoint],
    overrides: Sequence[PoseOverride],
) -> int:
    """Re-place merged points from each override mesh's points.

    For every joint selected by an override entry, the override mesh's
    skeleton-level and mesh-level points bound to that joint overwrite the
    same-named merged point. Returns the number of merged points written.
    """
    by_name = {point.name: point for point in points}
    applied = 0

    for pose_override in overrides:
        mesh = pose_override.mesh
        source_points: List[AttachmentPoint] = []
        if mesh.skeleton_asset is not None:
            source_points.extend(mesh.skeleton_asset.attachment_points)
        source_points.extend(mesh.attachment_points)

        for bone_override in pose_override.overrides:
            for joint_index in override_joint_indices(mesh.skeleton, bone_override):
                joint_name = mesh.skeleton.name_of(joint_index)
                for source_point in source_points:
                    if source_point.bone_name != joint_name:
                        continue
                    target = by_name.get(source_point.name)
                    if target is None:
                        continue
                    target.copy_placement_from(source_point)
                    applied += 1

    if applied:
        logger.info("Applied %d attachment point overrides", applied)
    return applied
