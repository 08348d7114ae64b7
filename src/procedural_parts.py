"""
Deterministic synthetic skinned parts for tests and the demo CLI.

Parts are built from trimesh boxes, each box rigidly skinned to one joint.
The canonical character skeleton is:

    root
    └── pelvis
        └── spine
            ├── head
            ├── upper_arm_l ── hand_l
            └── upper_arm_r ── hand_r
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import trimesh
from trimesh.creation import box

from merge_context import MAIN_TEXTURE, NORMAL_MAP
from skeleton import JointHierarchy, Transform
from skinned_mesh import (
    AttachmentPoint,
    Bounds,
    DuplicatedVertices,
    LODInfo,
    LODModel,
    Material,
    MaterialSlot,
    RenderSection,
    SkeletonAsset,
    SkinnedMesh,
    Texture,
)

# (name, parent, local translation)
CANONICAL_JOINTS = [
    ("root", -1, (0.0, 0.0, 0.0)),
    ("pelvis", 0, (0.0, 0.0, 1.0)),
    ("spine", 1, (0.0, 0.0, 0.3)),
    ("head", 2, (0.0, 0.0, 0.5)),
    ("upper_arm_l", 2, (0.2, 0.0, 0.4)),
    ("hand_l", 4, (0.5, 0.0, 0.0)),
    ("upper_arm_r", 2, (-0.2, 0.0, 0.4)),
    ("hand_r", 6, (-0.5, 0.0, 0.0)),
]


@dataclass
class BoxPiece:
    """A box rigidly skinned to *joint_name*."""
    extents: Tuple[float, float, float]
    center: Tuple[float, float, float]
    joint_name: str


def canonical_skeleton() -> JointHierarchy:
    return skeleton_from_joints(CANONICAL_JOINTS)


def skeleton_from_joints(joints: Sequence[Tuple[str, int, Tuple[float, float, float]]]) -> JointHierarchy:
    return JointHierarchy.from_parents(
        [name for name, _, _ in joints],
        [parent for _, parent, _ in joints],
        [Transform.from_translation(*offset) for _, _, offset in joints],
    )


def chain_skeleton(num_joints: int, prefix: str = "bone") -> JointHierarchy:
    """root followed by a single chain of *num_joints* joints."""
    hierarchy = JointHierarchy()
    hierarchy.add_joint("root", -1)
    for i in range(num_joints):
        hierarchy.add_joint(f"{prefix}_{i:03d}", i, Transform.from_translation(0.0, 0.0, 0.1))
    return hierarchy


def solid_texture(name: str, size: Tuple[int, int], color: Sequence[int],
                  pixel_format: str = "RGBA8") -> Texture:
    width, height = size
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[:] = color
    return Texture(name=name, pixels=pixels, pixel_format=pixel_format)


def make_material(name: str, texture_size: Tuple[int, int], color: Sequence[int],
                  with_normal_map: bool = True) -> Material:
    textures = {MAIN_TEXTURE: solid_texture(f"{name}_albedo", texture_size, color)}
    if with_normal_map:
        textures[NORMAL_MAP] = solid_texture(f"{name}_normal", texture_size, (128, 128, 255, 255))
    return Material(name=name, textures=textures)


def make_lod_model(
    positions: np.ndarray,
    indices: np.ndarray,
    bone_slots: np.ndarray,
    bone_map: Sequence[int],
    normals: Optional[np.ndarray] = None,
    uvs: Optional[np.ndarray] = None,
    num_uvs: int = 1,
    num_influences: int = 4,
    color: Optional[Sequence[int]] = None,
    material_index: int = 0,
    screen_size: float = 1.0,
) -> LODModel:
    """Single-section LOD from raw arrays, every vertex fully weighted to
    its bone map slot."""
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    n = len(positions)
    if normals is None:
        normals = np.tile(np.array([0.0, 0.0, 1.0], dtype=np.float32), (n, 1))
    tangents = np.tile(np.array([1.0, 0.0, 0.0, 1.0], dtype=np.float32), (n, 1))

    if uvs is None:
        uvs = planar_uvs(positions)
    layered = np.repeat(np.asarray(uvs, dtype=np.float32)[:, None, :], num_uvs, axis=1)

    bone_indices = np.zeros((n, num_influences), dtype=np.uint16)
    bone_indices[:, 0] = bone_slots
    bone_weights = np.zeros((n, num_influences), dtype=np.uint8)
    bone_weights[:, 0] = 255

    colors = None
    if color is not None:
        colors = np.empty((n, 4), dtype=np.uint8)
        colors[:] = color

    indices = np.asarray(indices).reshape(-1)
    index_dtype = np.uint16 if n <= 0x10000 else np.uint32
    section = RenderSection(
        material_index=material_index,
        base_index=0,
        num_triangles=len(indices) // 3,
        base_vertex_index=0,
        num_vertices=n,
        bone_map=list(bone_map),
        duplicated_vertices=DuplicatedVertices.empty(n),
    )
    return LODModel(
        positions=positions,
        normals=np.asarray(normals, dtype=np.float32),
        tangents=tangents,
        uvs=layered,
        bone_indices=bone_indices,
        bone_weights=bone_weights,
        indices=indices.astype(index_dtype),
        sections=[section],
        colors=colors,
        required_bones=sorted(set(bone_map)),
        active_bone_indices=sorted(set(bone_map)),
        info=LODInfo(screen_size=screen_size, lod_material_map=[material_index]),
    )


def planar_uvs(positions: np.ndarray) -> np.ndarray:
    """XY projection normalised to the unit square."""
    xy = np.asarray(positions, dtype=np.float64)[:, :2]
    if len(xy) == 0:
        return np.zeros((0, 2), dtype=np.float32)
    lo = xy.min(axis=0)
    span = np.maximum(xy.max(axis=0) - lo, 1e-9)
    return ((xy - lo) / span).astype(np.float32)


def pieces_to_trimesh(pieces: Sequence[BoxPiece]) -> Tuple[trimesh.Trimesh, np.ndarray]:
    """Concatenated box geometry and the piece index of every vertex."""
    meshes = []
    owners = []
    for i, piece in enumerate(pieces):
        transform = trimesh.transformations.translation_matrix(piece.center)
        mesh = box(extents=piece.extents, transform=transform)
        meshes.append(mesh)
        owners.append(np.full(len(mesh.vertices), i, dtype=np.int64))
    combined = trimesh.util.concatenate(meshes)
    return combined, np.concatenate(owners)


def make_part(
    name: str,
    skeleton: JointHierarchy,
    pieces: Sequence[BoxPiece],
    num_lods: int = 2,
    texture_size: Tuple[int, int] = (256, 256),
    color: Sequence[int] = (200, 200, 200, 255),
    num_uvs: int = 1,
    extra_influences: bool = False,
    vertex_color: Optional[Sequence[int]] = None,
    attachment_points: Optional[List[AttachmentPoint]] = None,
    skeleton_asset: Optional[SkeletonAsset] = None,
) -> SkinnedMesh:
    """A skinned part made of rigidly skinned boxes.

    Every LOD carries the same geometry; LOD i has screen size 1 / 2**i.
    """
    bone_map: List[int] = []
    for piece in pieces:
        joint = skeleton.find_index(piece.joint_name)
        if joint < 0:
            raise ValueError(f"Joint '{piece.joint_name}' not in skeleton of '{name}'")
        if joint not in bone_map:
            bone_map.append(joint)

    geometry, owners = pieces_to_trimesh(pieces)
    piece_slots = np.array([bone_map.index(skeleton.find_index(p.joint_name)) for p in pieces])

    lods = []
    for lod_index in range(num_lods):
        lods.append(make_lod_model(
            positions=geometry.vertices,
            indices=geometry.faces,
            bone_slots=piece_slots[owners],
            bone_map=bone_map,
            normals=geometry.vertex_normals,
            num_uvs=num_uvs,
            num_influences=8 if extra_influences else 4,
            color=vertex_color,
            screen_size=1.0 / (2 ** lod_index),
        ))

    slot = MaterialSlot(material=make_material(f"{name}_material", texture_size, color))
    slot.uv_densities[:num_uvs] = max(texture_size)

    return SkinnedMesh(
        name=name,
        skeleton=skeleton,
        materials=[slot],
        lods=lods,
        attachment_points=list(attachment_points or []),
        skeleton_asset=skeleton_asset,
        bounds=Bounds.from_points(geometry.vertices),
    )


def make_body(num_lods: int = 2, skeleton_asset: Optional[SkeletonAsset] = None) -> SkinnedMesh:
    """Torso, head and arms on the full canonical skeleton."""
    pieces = [
        BoxPiece((0.4, 0.25, 0.3), (0.0, 0.0, 1.15), "pelvis"),
        BoxPiece((0.45, 0.25, 0.5), (0.0, 0.0, 1.55), "spine"),
        BoxPiece((0.25, 0.25, 0.3), (0.0, 0.0, 1.95), "head"),
        BoxPiece((0.5, 0.1, 0.1), (0.45, 0.0, 1.7), "upper_arm_l"),
        BoxPiece((0.12, 0.08, 0.12), (0.75, 0.0, 1.7), "hand_l"),
        BoxPiece((0.5, 0.1, 0.1), (-0.45, 0.0, 1.7), "upper_arm_r"),
        BoxPiece((0.12, 0.08, 0.12), (-0.75, 0.0, 1.7), "hand_r"),
    ]
    if skeleton_asset is None:
        skeleton_asset = SkeletonAsset(
            name="character_skeleton",
            attachment_points=[
                AttachmentPoint("hand_r", "hand_r", location=np.array([-0.05, 0.0, 0.0])),
                AttachmentPoint("head_top", "head", location=np.array([0.0, 0.0, 0.2])),
            ],
        )
    return make_part(
        "body", canonical_skeleton(), pieces,
        num_lods=num_lods, texture_size=(512, 512), color=(210, 170, 140, 255),
        skeleton_asset=skeleton_asset,
    )


def make_hat(num_lods: int = 2) -> SkinnedMesh:
    """A hat with its own two-joint skeleton, meant to be attached to 'head'."""
    skeleton = skeleton_from_joints([
        ("hat_root", -1, (0.0, 0.0, 0.0)),
        ("hat_brim", 0, (0.0, 0.0, 0.05)),
    ])
    pieces = [
        BoxPiece((0.35, 0.35, 0.03), (0.0, 0.0, 0.05), "hat_brim"),
        BoxPiece((0.22, 0.22, 0.2), (0.0, 0.0, 0.16), "hat_root"),
    ]
    return make_part(
        "hat", skeleton, pieces,
        num_lods=num_lods, texture_size=(128, 128), color=(40, 40, 120, 255),
        attachment_points=[AttachmentPoint("feather", "hat_root", location=np.array([0.1, 0.0, 0.2]))],
    )


def make_glove(side: str = "r", num_lods: int = 2, vertex_color: Optional[Sequence[int]] = None) -> SkinnedMesh:
    """A glove skinned to the canonical arm and hand joints of *side*."""
    upper_arm, hand = f"upper_arm_{side}", f"hand_{side}"
    sign = -1.0 if side == "r" else 1.0
    skeleton = skeleton_from_joints([
        ("root", -1, (0.0, 0.0, 0.0)),
        (upper_arm, 0, (sign * 0.2, 0.0, 1.7)),
        (hand, 1, (sign * 0.5, 0.0, 0.0)),
    ])
    pieces = [
        BoxPiece((0.14, 0.12, 0.14), (sign * 0.75, 0.0, 1.7), hand),
        BoxPiece((0.1, 0.12, 0.12), (sign * 0.62, 0.0, 1.7), upper_arm),
    ]
    return make_part(
        f"glove_{side}", skeleton, pieces,
        num_lods=num_lods, texture_size=(128, 64), color=(90, 60, 30, 255),
        vertex_color=vertex_color,
        attachment_points=[
            AttachmentPoint(hand, hand, location=np.array([-0.1, 0.02, 0.0])),
        ],
    )


def make_chain_part(
    name: str,
    skeleton: JointHierarchy,
    joint_indices: Sequence[int],
    num_lods: int = 1,
    texture_size: Tuple[int, int] = (64, 64),
) -> SkinnedMesh:
    """One small box per listed joint, all in a single section."""
    pieces = [
        BoxPiece((0.05, 0.05, 0.05), (0.0, 0.0, 0.1 * joint), skeleton.name_of(joint))
        for joint in joint_indices
    ]
    return make_part(name, skeleton, pieces, num_lods=num_lods, texture_size=texture_size)
