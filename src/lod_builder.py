"""
Merged LOD buffer construction.

Materializes every merge group of a LOD as one render section and
concatenates the vertex, skin-weight, color, index and duplicate-vertex
data of its contributing source sections.

The vertex layout is resolved once per LOD into a VertexFormat (UV channel
count, influence width, UV precision) and a single generic routine builds
buffers for any format.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from merge_context import NO_MATERIAL_ID, MergeContext, MergeContractError
from section_grouper import MergeSectionInfo, NewSectionInfo, generate_section_groups
from skinned_mesh import (
    MAX_TEXCOORDS,
    WHITE,
    DuplicatedVertices,
    LODInfo,
    LODModel,
    MaterialSlot,
    RenderSection,
    VertexFormat,
)

logger = logging.getLogger(__name__)

MAX_UINT16_INDEX = 0xFFFF


def resolve_vertex_format(context: MergeContext, lod_index: int) -> VertexFormat:
    """Widest UV and influence layout among the sources' LODs."""
    num_uvs = 0
    extra_influences = False
    for mesh in context.meshes:
        if mesh is None or not mesh.lods:
            continue
        lod = mesh.render_data(lod_index)
        num_uvs = max(num_uvs, lod.num_uvs)
        extra_influences |= lod.has_extra_bone_influences
    return VertexFormat.resolve(
        num_uvs=num_uvs,
        extra_bone_influences=extra_influences,
        full_precision_uvs=context.config.full_precision_uvs,
    )


def select_index_dtype(max_index: int):
    """Smallest index type that can address *max_index*."""
    return np.uint16 if max_index <= MAX_UINT16_INDEX else np.uint32


@dataclass
class _MergedBuffers:
    """Growing per-LOD buffers, stacked once every section is copied."""
    vertex_format: VertexFormat
    with_colors: bool
    positions: List[np.ndarray] = field(default_factory=list)
    normals: List[np.ndarray] = field(default_factory=list)
    tangents: List[np.ndarray] = field(default_factory=list)
    uvs: List[np.ndarray] = field(default_factory=list)
    bone_indices: List[np.ndarray] = field(default_factory=list)
    bone_weights: List[np.ndarray] = field(default_factory=list)
    colors: List[np.ndarray] = field(default_factory=list)
    indices: List[np.ndarray] = field(default_factory=list)
    num_vertices: int = 0
    num_indices: int = 0
    max_index: int = 0

    def stack(self):
        fmt = self.vertex_format
        k = fmt.num_influences

        def cat(chunks, shape, dtype):
            if not chunks:
                return np.zeros(shape, dtype=dtype)
            return np.concatenate(chunks).astype(dtype, copy=False)

        indices = cat(self.indices, (0,), np.int64)
        return dict(
            positions=cat(self.positions, (0, 3), np.float32),
            normals=cat(self.normals, (0, 3), np.float32),
            tangents=cat(self.tangents, (0, 4), np.float32),
            uvs=cat(self.uvs, (0, fmt.num_uvs, 2), fmt.uv_dtype),
            bone_indices=cat(self.bone_indices, (0, k), np.uint16),
            bone_weights=cat(self.bone_weights, (0, k), np.uint8),
            colors=cat(self.colors, (0, 4), np.uint8) if self.with_colors else None,
            indices=indices.astype(select_index_dtype(self.max_index)),
        )


def build_lod_model(context: MergeContext, lod_index: int) -> LODModel:
    """Build the merged LOD for source LOD *lod_index*.

    Material slots are appended to ``context.material_slots`` (with their
    ids in ``context.material_ids``) the first time a group needs them.
    """
    fmt = resolve_vertex_format(context, lod_index)
    groups = generate_section_groups(context, lod_index)
    buffers = _MergedBuffers(vertex_format=fmt, with_colors=context.has_vertex_colors)

    info = LODInfo(screen_size=np.inf, hysteresis=np.inf)
    sections: List[RenderSection] = []
    active_bones: List[int] = []
    active_seen = set()
    required_bones = set()

    for group in groups:
        for bone in group.merged_bone_map:
            if bone not in active_seen:
                active_seen.add(bone)
                active_bones.append(bone)

        material_index = _resolve_material_index(context, group)
        slot = context.material_slots[material_index]

        base_vertex = buffers.num_vertices
        base_index = buffers.num_indices
        duplicate_parts = []

        for merge_info in group.merge_sections:
            source_slot = merge_info.mesh.materials[merge_info.material_index] \
                if merge_info.mesh.materials else None
            if source_slot is not None:
                slot.uv_densities = np.maximum(slot.uv_densities, source_slot.uv_densities)

            _merge_lod_info(info, merge_info.source_lod.info)

            remap = context.bone_remaps[merge_info.mesh_index]
            for bone in merge_info.source_lod.required_bones:
                if 0 <= bone < len(remap):
                    required_bones.add(remap[bone])

            vertex_offset = buffers.num_vertices
            copied = _copy_section(buffers, merge_info)
            duplicate_parts.append((merge_info, copied, vertex_offset))

        num_vertices = buffers.num_vertices - base_vertex
        sections.append(RenderSection(
            material_index=material_index,
            base_index=base_index,
            num_triangles=(buffers.num_indices - base_index) // 3,
            base_vertex_index=base_vertex,
            num_vertices=num_vertices,
            bone_map=list(group.merged_bone_map),
            duplicated_vertices=_merge_duplicated_vertices(duplicate_parts),
        ))

    if not np.isfinite(info.screen_size):
        info.screen_size = 0.0
    if not np.isfinite(info.hysteresis):
        info.hysteresis = 0.0

    stacked = buffers.stack()
    lod = LODModel(
        sections=sections,
        required_bones=sorted(required_bones),
        active_bone_indices=context.unified_hierarchy.ensure_parents_exist_and_sort(active_bones),
        info=info,
        vertex_format=fmt,
        needs_cpu_access=context.config.needs_cpu_access,
        **stacked,
    )
    logger.info(
        "LOD %d: %d sections, %d vertices, %d triangles, %d-bit indices",
        lod_index, len(sections), lod.num_vertices, lod.num_triangles, lod.index_width_bits,
    )
    return lod


def _resolve_material_index(context: MergeContext, group: NewSectionInfo) -> int:
    """Find or create the merged material slot for *group*."""
    index = -1
    if group.material_id == NO_MATERIAL_ID:
        for i, slot in enumerate(context.material_slots):
            if slot.material is group.material:
                index = i
                break
    elif group.material_id in context.material_ids:
        index = context.material_ids.index(group.material_id)

    if index == -1:
        context.material_slots.append(MaterialSlot(material=group.material))
        context.material_ids.append(group.material_id)
        index = len(context.material_slots) - 1
    return index


def _merge_lod_info(target: LODInfo, source: LODInfo) -> None:
    """Keep the most conservative (lowest) thresholds."""
    target.screen_size = min(target.screen_size, source.screen_size)
    target.hysteresis = min(target.hysteresis, source.hysteresis)
    for platform, value in source.screen_size_per_platform.items():
        current = target.screen_size_per_platform.get(platform)
        target.screen_size_per_platform[platform] = value if current is None else min(current, value)


def _copy_section(buffers: _MergedBuffers, merge_info: MergeSectionInfo) -> int:
    """Append one source section's vertices and indices; returns vertex count."""
    fmt = buffers.vertex_format
    src = merge_info.source_lod
    section = merge_info.section

    start = section.base_vertex_index
    stop = min(start + section.num_vertices, src.num_vertices)
    count = max(0, stop - start)
    current_base = buffers.num_vertices

    buffers.positions.append(merge_info.vertex_transform.transform_points(src.positions[start:stop]))
    buffers.normals.append(np.asarray(src.normals[start:stop], dtype=np.float32))
    buffers.tangents.append(np.asarray(src.tangents[start:stop], dtype=np.float32))
    buffers.uvs.append(_copy_uvs(src, start, stop, fmt, merge_info))

    weights, bones = _copy_skin_weights(src, start, stop, fmt, merge_info)
    buffers.bone_weights.append(weights)
    buffers.bone_indices.append(bones)

    if buffers.with_colors:
        colors = np.empty((count, 4), dtype=np.uint8)
        colors[:] = WHITE
        if src.colors is not None:
            available = max(0, min(stop, len(src.colors)) - start)
            colors[:available] = src.colors[start:start + available]
        buffers.colors.append(colors)

    buffers.num_vertices += count

    index_start = section.base_index
    index_stop = min(index_start + section.num_triangles * 3, len(src.indices))
    source_indices = np.asarray(src.indices[index_start:index_stop], dtype=np.int64)
    if len(source_indices):
        if source_indices.min() < start:
            raise MergeContractError(
                f"Section of '{merge_info.mesh.name}' indexes vertex {source_indices.min()} "
                f"below its base vertex {start}"
            )
        dest_indices = source_indices - start + current_base
        if dest_indices.max() >= buffers.num_vertices:
            raise MergeContractError(
                f"Section of '{merge_info.mesh.name}' indexes past its own vertex range"
            )
        buffers.indices.append(dest_indices)
        buffers.num_indices += len(dest_indices)
        buffers.max_index = max(buffers.max_index, int(dest_indices.max()))

    return count


def _copy_uvs(src: LODModel, start: int, stop: int, fmt: VertexFormat,
              merge_info: MergeSectionInfo) -> np.ndarray:
    for channel in range(src.num_uvs, len(merge_info.uv_transforms)):
        if merge_info.uv_transforms[channel] is not None:
            raise MergeContractError(
                f"'{merge_info.mesh.name}' has {src.num_uvs} UV set(s) but its atlas "
                f"region is addressed through UV channel {channel}"
            )

    uvs = np.zeros((max(0, stop - start), fmt.num_uvs, 2), dtype=np.float64)
    for channel in range(min(src.num_uvs, fmt.num_uvs, MAX_TEXCOORDS)):
        channel_uvs = np.asarray(src.uvs[start:stop, channel], dtype=np.float64)
        uv_transform = merge_info.uv_transforms[channel] \
            if channel < len(merge_info.uv_transforms) else None
        if uv_transform is not None:
            channel_uvs = uv_transform.apply(channel_uvs)
        uvs[:, channel] = channel_uvs
    return uvs.astype(fmt.uv_dtype)


def _copy_skin_weights(src: LODModel, start: int, stop: int, fmt: VertexFormat,
                       merge_info: MergeSectionInfo):
    """Zero-padded weights and bone slots rewritten into the merged bone map."""
    count = max(0, stop - start)
    source_width = src.num_influences
    if source_width > fmt.num_influences:
        raise MergeContractError(
            f"Source influence width {source_width} exceeds merged width {fmt.num_influences}"
        )

    weights = np.zeros((count, fmt.num_influences), dtype=np.uint8)
    bones = np.zeros((count, fmt.num_influences), dtype=np.uint16)
    weights[:, :source_width] = src.bone_weights[start:stop]

    source_bones = np.asarray(src.bone_indices[start:stop], dtype=np.int64)
    table = np.asarray(merge_info.bone_map_to_merged, dtype=np.int64)
    weighted = weights[:, :source_width] > 0
    remapped = source_bones.copy()
    if weighted.any():
        used = source_bones[weighted]
        if used.max() >= len(table) or used.min() < 0:
            raise MergeContractError(
                f"Vertex of '{merge_info.mesh.name}' references bone slot {used.max()} "
                f"but its section bone map has {len(table)} entries"
            )
        remapped[weighted] = table[used]
    bones[:, :source_width] = remapped
    return weights, bones


def _merge_duplicated_vertices(parts) -> DuplicatedVertices:
    """Concatenate contributors' duplicate-vertex data for one merged section.

    Each part is (merge info, copied vertex count, merged vertex offset).
    Vertex references shift by the section's move in the vertex buffer and
    run starts shift by the data already accumulated.
    """
    vertex_chunks: List[np.ndarray] = []
    index_chunks: List[np.ndarray] = []
    data_length = 0
    has_overlapping = False

    for merge_info, count, vertex_offset in parts:
        index_data = np.zeros((count, 2), dtype=np.int64)
        source: Optional[DuplicatedVertices] = merge_info.section.duplicated_vertices
        if source is not None and source.has_overlapping:
            shift = vertex_offset - merge_info.section.base_vertex_index
            vertex_chunks.append(np.asarray(source.vertex_data, dtype=np.int64) + shift)
            available = min(count, len(source.index_data))
            index_data[:available] = source.index_data[:available]
            index_data[:available, 0] += data_length
            data_length += len(source.vertex_data)
            has_overlapping = True
        index_chunks.append(index_data)

    if not has_overlapping:
        total = sum(count for _, count, _ in parts)
        return DuplicatedVertices.empty(total)

    return DuplicatedVertices(
        vertex_data=np.concatenate(vertex_chunks).astype(np.uint32),
        index_data=np.concatenate(index_chunks).astype(np.uint32),
        has_overlapping=True,
    )
