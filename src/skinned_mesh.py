"""
Core data structures for skinned mesh assets.

Source meshes and merged meshes share these types: a merged SkinnedMesh can
be fed back in as a merge source.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import trimesh

from skeleton import JointHierarchy, Transform

MAX_TEXCOORDS = 4
MAX_INFLUENCES_PER_STREAM = 4
MAX_TOTAL_INFLUENCES = 8

WHITE = (255, 255, 255, 255)


# ─── Materials and textures ──────────────────────────────────────────────────


@dataclass
class Texture:
    """A 2D image: pixels are (height, width, channels)."""
    name: str
    pixels: np.ndarray
    pixel_format: str = "RGBA8"
    srgb: bool = True

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) in pixels."""
        return (int(self.pixels.shape[1]), int(self.pixels.shape[0]))


@dataclass
class Material:
    """A surface material with named texture and scalar parameters.

    A material created by ``instantiate`` inherits every parameter it does
    not override from its parent.
    """
    name: str
    textures: Dict[str, Texture] = field(default_factory=dict)
    scalars: Dict[str, float] = field(default_factory=dict)
    parent: Optional["Material"] = None

    def texture_parameter(self, name: str) -> Optional[Texture]:
        if name in self.textures:
            return self.textures[name]
        if self.parent is not None:
            return self.parent.texture_parameter(name)
        return None

    def set_texture_parameter(self, name: str, texture: Texture) -> None:
        self.textures[name] = texture

    def scalar_parameter(self, name: str, default: float = 0.0) -> float:
        if name in self.scalars:
            return self.scalars[name]
        if self.parent is not None:
            return self.parent.scalar_parameter(name, default)
        return default

    def instantiate(self, name: Optional[str] = None) -> "Material":
        return Material(name=name or f"{self.name}_instance", parent=self)


@dataclass
class MaterialSlot:
    """A material as used by one mesh, with per-UV-channel texel densities."""
    material: Material
    uv_densities: np.ndarray = field(default_factory=lambda: np.zeros(MAX_TEXCOORDS))


# ─── Attachment points ───────────────────────────────────────────────────────


@dataclass
class AttachmentPoint:
    """A named, joint-relative transform used to parent external objects."""
    name: str
    bone_name: str
    location: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))

    def duplicate(self) -> "AttachmentPoint":
        return AttachmentPoint(
            name=self.name,
            bone_name=self.bone_name,
            location=np.array(self.location, dtype=np.float64),
            rotation=np.array(self.rotation, dtype=np.float64),
            scale=np.array(self.scale, dtype=np.float64),
        )

    def copy_placement_from(self, other: "AttachmentPoint") -> None:
        """Take *other*'s joint and relative transform, keep own name."""
        self.bone_name = other.bone_name
        self.location = np.array(other.location, dtype=np.float64)
        self.rotation = np.array(other.rotation, dtype=np.float64)
        self.scale = np.array(other.scale, dtype=np.float64)


@dataclass
class SkeletonAsset:
    """Shared skeleton asset; its attachment points are visible to every
    mesh bound to it."""
    name: str
    attachment_points: List[AttachmentPoint] = field(default_factory=list)

    def find_attachment_point(self, name: str) -> Optional[AttachmentPoint]:
        for point in self.attachment_points:
            if point.name == name:
                return point
        return None


# ─── Geometry ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VertexFormat:
    """Vertex layout of one LOD: UV channel count and influence width."""
    num_uvs: int = 1
    num_influences: int = MAX_INFLUENCES_PER_STREAM
    full_precision_uvs: bool = True

    def __post_init__(self):
        if not 1 <= self.num_uvs <= MAX_TEXCOORDS:
            raise ValueError(
                f"Invalid number of UV sets {self.num_uvs}; must be between 1 and {MAX_TEXCOORDS}"
            )
        if self.num_influences not in (MAX_INFLUENCES_PER_STREAM, MAX_TOTAL_INFLUENCES):
            raise ValueError(
                f"Invalid influence count {self.num_influences}; "
                f"must be {MAX_INFLUENCES_PER_STREAM} or {MAX_TOTAL_INFLUENCES}"
            )

    @classmethod
    def resolve(
        cls,
        num_uvs: int,
        extra_bone_influences: bool,
        full_precision_uvs: bool = True,
    ) -> "VertexFormat":
        return cls(
            num_uvs=max(1, min(int(num_uvs), MAX_TEXCOORDS)),
            num_influences=MAX_TOTAL_INFLUENCES if extra_bone_influences else MAX_INFLUENCES_PER_STREAM,
            full_precision_uvs=full_precision_uvs,
        )

    @property
    def uv_dtype(self):
        return np.float32 if self.full_precision_uvs else np.float16

    @property
    def has_extra_bone_influences(self) -> bool:
        return self.num_influences > MAX_INFLUENCES_PER_STREAM


@dataclass
class DuplicatedVertices:
    """Overlapping-vertex lookup for one render section.

    ``index_data[i] = (start, length)`` addresses the run of
    ``vertex_data`` listing the vertices that overlap section vertex ``i``.
    """
    vertex_data: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))
    index_data: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.uint32))
    has_overlapping: bool = False

    @classmethod
    def empty(cls, num_vertices: int) -> "DuplicatedVertices":
        return cls(
            vertex_data=np.zeros(0, dtype=np.uint32),
            index_data=np.zeros((num_vertices, 2), dtype=np.uint32),
            has_overlapping=False,
        )


@dataclass
class RenderSection:
    """A contiguous run of vertices/indices sharing one material and bone map."""
    material_index: int
    base_index: int
    num_triangles: int
    base_vertex_index: int
    num_vertices: int
    bone_map: List[int] = field(default_factory=list)
    duplicated_vertices: Optional[DuplicatedVertices] = None


@dataclass
class LODInfo:
    """LOD selection thresholds and per-LOD material remapping."""
    screen_size: float = 1.0
    hysteresis: float = 0.0
    screen_size_per_platform: Dict[str, float] = field(default_factory=dict)
    lod_material_map: List[int] = field(default_factory=list)


@dataclass
class LODModel:
    """Vertex, skin-weight, color and index buffers for one LOD.

    Attributes:
        positions: (N, 3) float32
        normals: (N, 3) float32
        tangents: (N, 4) float32, w = bitangent sign
        uvs: (N, U, 2) float32 or float16
        bone_indices: (N, K) uint16, section-local bone map indices
        bone_weights: (N, K) uint8, K = 4 or 8
        indices: (3T,) uint16 or uint32
        colors: optional (N, 4) uint8
    """
    positions: np.ndarray
    normals: np.ndarray
    tangents: np.ndarray
    uvs: np.ndarray
    bone_indices: np.ndarray
    bone_weights: np.ndarray
    indices: np.ndarray
    sections: List[RenderSection] = field(default_factory=list)
    colors: Optional[np.ndarray] = None
    required_bones: List[int] = field(default_factory=list)
    active_bone_indices: List[int] = field(default_factory=list)
    info: LODInfo = field(default_factory=LODInfo)
    vertex_format: Optional[VertexFormat] = None
    needs_cpu_access: bool = False

    @property
    def num_vertices(self) -> int:
        return int(len(self.positions))

    @property
    def num_triangles(self) -> int:
        return int(len(self.indices) // 3)

    @property
    def num_uvs(self) -> int:
        return int(self.uvs.shape[1]) if self.uvs.ndim == 3 else 0

    @property
    def num_influences(self) -> int:
        return int(self.bone_weights.shape[1])

    @property
    def has_extra_bone_influences(self) -> bool:
        return self.num_influences > MAX_INFLUENCES_PER_STREAM

    @property
    def has_vertex_colors(self) -> bool:
        return self.colors is not None

    @property
    def index_width_bits(self) -> int:
        return int(np.dtype(self.indices.dtype).itemsize * 8)

    @property
    def max_index(self) -> int:
        return int(self.indices.max()) if len(self.indices) else 0

    def to_trimesh(self) -> trimesh.Trimesh:
        """Static (bind pose) preview mesh of this LOD."""
        kwargs = {}
        if self.colors is not None:
            kwargs["vertex_colors"] = self.colors
        elif self.num_uvs:
            kwargs["visual"] = trimesh.visual.TextureVisuals(
                uv=self.uvs[:, 0].astype(np.float64),
            )
        return trimesh.Trimesh(
            vertices=self.positions.astype(np.float64),
            faces=self.indices.astype(np.int64).reshape(-1, 3),
            vertex_normals=self.normals.astype(np.float64),
            process=False,
            **kwargs,
        )


@dataclass
class Bounds:
    """Axis-aligned bounding box."""
    minimum: np.ndarray
    maximum: np.ndarray

    @classmethod
    def from_points(cls, points: np.ndarray) -> "Bounds":
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return cls(minimum=np.zeros(3), maximum=np.zeros(3))
        return cls(minimum=points.min(axis=0), maximum=points.max(axis=0))

    def union(self, other: "Bounds") -> "Bounds":
        return Bounds(
            minimum=np.minimum(self.minimum, other.minimum),
            maximum=np.maximum(self.maximum, other.maximum),
        )

    __add__ = union

    @property
    def extents(self) -> np.ndarray:
        return self.maximum - self.minimum

    @property
    def center(self) -> np.ndarray:
        return (self.minimum + self.maximum) * 0.5


@dataclass
class SkinnedMesh:
    """A skinned mesh: joint hierarchy, material slots, LODs, attachment points."""
    name: str
    skeleton: JointHierarchy
    materials: List[MaterialSlot] = field(default_factory=list)
    lods: List[LODModel] = field(default_factory=list)
    attachment_points: List[AttachmentPoint] = field(default_factory=list)
    skeleton_asset: Optional[SkeletonAsset] = None
    bounds: Optional[Bounds] = None
    inverse_bind_matrices: Optional[np.ndarray] = None

    def lod_count(self) -> int:
        return len(self.lods)

    def render_data(self, lod_index: int) -> LODModel:
        """LOD buffers, clamped to the coarsest available LOD."""
        if not self.lods:
            raise IndexError(f"Mesh '{self.name}' has no LODs")
        return self.lods[min(lod_index, len(self.lods) - 1)]

    def clamp_lod_index(self, lod_index: int) -> int:
        return min(lod_index, len(self.lods) - 1)

    @property
    def has_vertex_colors(self) -> bool:
        return any(lod.colors is not None for lod in self.lods)

    def get_bounds(self) -> Bounds:
        if self.bounds is not None:
            return self.bounds
        if self.lods:
            return Bounds.from_points(self.lods[0].positions)
        return Bounds.from_points(np.zeros((0, 3)))

    def find_attachment_point(self, name: str) -> Optional[AttachmentPoint]:
        for point in self.attachment_points:
            if point.name == name:
                return point
        return None


@dataclass(frozen=True)
class SourcePart:
    """One merge input: a mesh, an optional joint to plug it into, and an
    affine offset applied to its vertices."""
    mesh: Optional[SkinnedMesh]
    attach_joint_name: Optional[str] = None
    vertex_transform: Transform = field(default_factory=Transform.identity)


@dataclass
class SectionMapping:
    """External material ids for one source mesh, indexed by section."""
    section_ids: Sequence[int] = field(default_factory=list)
