"""
Material merging through texture atlases.

Every material slot of every source contributes its main texture's size to
the atlas packer. The resulting placement boxes drive both the texture
compositing (one atlas per configured texture parameter) and the UV remap
transforms applied later by the LOD builder.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from atlas_packer import PlacementBox, UVTransform, atlas_utilization, pack_rectangles
from merge_context import MergeConfig, MergeContractError
from skinned_mesh import Material, SkinnedMesh, Texture
from texture_compositor import TextureCompositor

logger = logging.getLogger(__name__)

MaterialKey = Tuple[int, int]  # (source index, material slot index)


@dataclass
class MaterialMergeResult:
    """Merged material plus per-source, per-slot UV remap transforms."""
    merged_material: Material
    uv_transforms_per_mesh: List[List[UVTransform]] = field(default_factory=list)
    boxes: List[PlacementBox] = field(default_factory=list)
    material_keys: List[MaterialKey] = field(default_factory=list)
    utilization: float = 0.0
    skipped_textures: int = 0


def collect_material_keys(meshes: Sequence[Optional[SkinnedMesh]]) -> List[MaterialKey]:
    """(source, slot) pairs for every material slot, in input order."""
    keys: List[MaterialKey] = []
    for mesh_index, mesh in enumerate(meshes):
        if mesh is None:
            continue
        for slot_index in range(len(mesh.materials)):
            keys.append((mesh_index, slot_index))
    return keys


def merge_materials(
    meshes: Sequence[Optional[SkinnedMesh]],
    base_material: Material,
    config: MergeConfig,
    compositor: TextureCompositor,
) -> MaterialMergeResult:
    """Pack every source material into atlases and build the merged material.

    Raises:
        MergeContractError: a source material has no main texture to size
            its atlas region.
    """
    merged = base_material.instantiate(name=f"{base_material.name}_merged")
    uv_transforms: List[List[UVTransform]] = [[] for _ in meshes]

    if not config.merge_atlas:
        return MaterialMergeResult(merged_material=merged, uv_transforms_per_mesh=uv_transforms)

    keys = collect_material_keys(meshes)
    if not keys:
        logger.info("No source materials; merged material keeps the base template textures")
        return MaterialMergeResult(merged_material=merged, uv_transforms_per_mesh=uv_transforms)

    main_name = config.atlas_texture_names[0]
    sizes = []
    for mesh_index, slot_index in keys:
        material = meshes[mesh_index].materials[slot_index].material
        main_texture = material.texture_parameter(main_name)
        if main_texture is None:
            raise MergeContractError(
                f"Material '{material.name}' of source {mesh_index} has no '{main_name}' texture"
            )
        sizes.append(main_texture.size)

    canvas = (float(config.atlas_size[0]), float(config.atlas_size[1]))
    boxes = pack_rectangles(sizes, canvas)
    utilization = atlas_utilization(boxes, canvas)
    logger.info(
        "Packed %d material textures into %dx%d atlas (%.1f%% used)",
        len(boxes), config.atlas_size[0], config.atlas_size[1], 100.0 * utilization,
    )

    skipped = 0
    for texture_name, is_normal in zip(config.atlas_texture_names, config.atlas_normal_flags):
        textures = [
            meshes[mesh_index].materials[slot_index].material.texture_parameter(texture_name)
            for mesh_index, slot_index in keys
        ]
        atlas, property_skipped = composite_atlas(
            name=f"{merged.name}_{texture_name}",
            textures=textures,
            boxes=boxes,
            size=config.atlas_size,
            srgb=not is_normal,
            compositor=compositor,
        )
        skipped += property_skipped
        if atlas is not None:
            merged.set_texture_parameter(texture_name, atlas)

    for (mesh_index, _slot_index), placement in zip(keys, boxes):
        uv_transforms[mesh_index].append(placement.uv_transform(canvas))

    return MaterialMergeResult(
        merged_material=merged,
        uv_transforms_per_mesh=uv_transforms,
        boxes=boxes,
        material_keys=keys,
        utilization=utilization,
        skipped_textures=skipped,
    )


def composite_atlas(
    name: str,
    textures: Sequence[Optional[Texture]],
    boxes: Sequence[PlacementBox],
    size: Tuple[int, int],
    srgb: bool,
    compositor: TextureCompositor,
) -> Tuple[Optional[Texture], int]:
    """Composite *textures* into one atlas at their placement boxes.

    The atlas takes the pixel format of the first available texture;
    textures in any other format are skipped and leave their region blank.

    Returns:
        (atlas texture or None when no texture is available, skipped count)
    """
    if len(textures) != len(boxes):
        raise MergeContractError("Texture and placement box counts differ")

    first = next((t for t in textures if t is not None), None)
    if first is None:
        logger.debug("No source textures for atlas '%s'", name)
        return None, 0

    destination = compositor.create_texture(name, size, first.pixel_format, srgb)

    skipped = 0
    for texture, placement in zip(textures, boxes):
        if texture is None:
            continue
        if texture.pixel_format != destination.pixel_format:
            logger.warning(
                "Skipping texture '%s': pixel format %s does not match atlas format %s",
                texture.name, texture.pixel_format, destination.pixel_format,
            )
            skipped += 1
            continue
        rect = placement.pixel_rect()
        if rect[2] <= rect[0] or rect[3] <= rect[1]:
            logger.warning("Texture '%s' shrank below one pixel in atlas '%s'", texture.name, name)
            continue
        compositor.enqueue_copy(texture, destination, rect)

    copied = compositor.flush()
    logger.debug("Atlas '%s': %d regions composited, %d skipped", name, copied, skipped)
    return destination, skipped
