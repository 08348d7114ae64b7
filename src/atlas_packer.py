"""
Texture atlas bin-packing.

Packs weighted 2D rectangles (source texture sizes) into a fixed canvas
with a best-fit guillotine heuristic. A pass that cannot place every
rectangle shrinks all of them by 1% and starts over, so packing always
terminates for a non-empty input.

Placement boxes are in canvas pixel space; ``PlacementBox.uv_transform``
normalizes them to [0, 1] for UV remapping.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon, box
from shapely.ops import unary_union

logger = logging.getLogger(__name__)

DEFAULT_SHRINK_FACTOR = 0.99

Size2D = Tuple[float, float]


@dataclass(frozen=True)
class UVTransform:
    """Affine UV remap: ``uv * scale + offset``."""
    scale: Tuple[float, float] = (1.0, 1.0)
    offset: Tuple[float, float] = (0.0, 0.0)

    @classmethod
    def identity(cls) -> "UVTransform":
        return cls()

    def apply(self, uvs: np.ndarray) -> np.ndarray:
        uvs = np.asarray(uvs, dtype=np.float64)
        return uvs * np.asarray(self.scale) + np.asarray(self.offset)


@dataclass(frozen=True)
class PlacementBox:
    """Axis-aligned placement of one rectangle inside the canvas."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def area(self) -> float:
        return self.width * self.height

    def fits(self, width: float, height: float) -> bool:
        return self.width >= width and self.height >= height

    def uv_transform(self, canvas: Size2D) -> UVTransform:
        canvas_w, canvas_h = float(canvas[0]), float(canvas[1])
        return UVTransform(
            scale=(self.width / canvas_w, self.height / canvas_h),
            offset=(self.min_x / canvas_w, self.min_y / canvas_h),
        )

    def pixel_rect(self) -> Tuple[int, int, int, int]:
        """Rounded integer (x0, y0, x1, y1).

        Every edge is rounded on its own, so boxes that share an edge get
        disjoint pixel rects. A box under one pixel wide can come out empty.
        """
        return (
            int(round(self.min_x)),
            int(round(self.min_y)),
            int(round(self.max_x)),
            int(round(self.max_y)),
        )

    def to_polygon(self) -> Polygon:
        return box(self.min_x, self.min_y, self.max_x, self.max_y)


@dataclass
class WeightedRect:
    """A rectangle queued for packing; weight orders the insertion."""
    width: float
    height: float
    weight: float
    source_index: int


def weight_rectangles(sizes: Sequence[Size2D], canvas: Size2D) -> List[WeightedRect]:
    """Weight every rectangle by ``width / canvas_width``."""
    canvas_w = float(canvas[0])
    return [
        WeightedRect(
            width=float(w),
            height=float(h),
            weight=float(w) / canvas_w,
            source_index=i,
        )
        for i, (w, h) in enumerate(sizes)
    ]


def pack_rectangles(
    sizes: Sequence[Size2D],
    canvas: Size2D,
    shrink_factor: float = DEFAULT_SHRINK_FACTOR,
) -> List[PlacementBox]:
    """Pack *sizes* into *canvas*; returns one box per input, in input order.

    Args:
        sizes: (width, height) of every rectangle.
        canvas: (width, height) of the destination canvas.
        shrink_factor: per-retry scale applied to every rectangle after a
            failed pass.

    Raises:
        ValueError: no rectangles, a non-positive or non-finite canvas, a
            negative or non-finite rectangle size, or a shrink factor
            outside (0, 1).
    """
    if len(sizes) == 0:
        raise ValueError("Cannot pack an empty rectangle set")
    if canvas[0] <= 0 or canvas[1] <= 0:
        raise ValueError(f"Canvas must have a positive extent, got {canvas}")
    if not 0.0 < shrink_factor < 1.0:
        raise ValueError(f"shrink_factor must be in (0, 1), got {shrink_factor}")
    if not np.isfinite(canvas[:2]).all():
        raise ValueError(f"Canvas must be finite, got {canvas}")
    for w, h in sizes:
        if not (np.isfinite(w) and np.isfinite(h)):
            raise ValueError(f"Rectangle sizes must be finite, got {(w, h)}")
        if w < 0 or h < 0:
            raise ValueError(f"Rectangle sizes must be non-negative, got {(w, h)}")

    # sorted() is stable with reverse=True, so equal weights keep input order.
    rects = sorted(weight_rectangles(sizes, canvas), key=lambda r: r.weight, reverse=True)

    retries = 0
    while True:
        placed = _try_pack(rects, canvas)
        if placed is not None:
            break
        retries += 1
        for rect in rects:
            rect.width *= shrink_factor
            rect.height *= shrink_factor

    if retries:
        logger.warning(
            "Atlas packing needed %d shrink passes (rectangles at %.1f%% of source size)",
            retries, 100.0 * shrink_factor ** retries,
        )

    boxes: List[Optional[PlacementBox]] = [None] * len(sizes)
    for source_index, placement in placed:
        boxes[source_index] = placement
    return boxes


def _try_pack(
    rects: Sequence[WeightedRect],
    canvas: Size2D,
) -> Optional[List[Tuple[int, PlacementBox]]]:
    """One packing pass; None when some rectangle does not fit."""
    free: List[PlacementBox] = [PlacementBox(0.0, 0.0, float(canvas[0]), float(canvas[1]))]
    placed: List[Tuple[int, PlacementBox]] = []

    for rect in rects:
        if rect.width <= 0.0 or rect.height <= 0.0:
            # zero-area rectangles occupy nothing
            placed.append((rect.source_index, PlacementBox(0.0, 0.0, rect.width, rect.height)))
            continue

        best = _best_fit(free, rect.width, rect.height)
        if best == -1:
            return None

        region = free[best]
        placed.append((
            rect.source_index,
            PlacementBox(
                region.min_x,
                region.min_y,
                region.min_x + rect.width,
                region.min_y + rect.height,
            ),
        ))

        #  _________
        # |    |    |
        # |____|    |
        # |  B |  R |
        # |____|____|
        below = PlacementBox(
            region.min_x,
            region.min_y + rect.height,
            region.min_x + rect.width,
            region.max_y,
        )
        right = PlacementBox(
            region.min_x + rect.width,
            region.min_y,
            region.max_x,
            region.max_y,
        )
        below_valid = below.area > 0.0
        right_valid = right.area > 0.0

        if below_valid and right_valid:
            free[best] = below
            free.append(right)
        elif right_valid:
            free[best] = right
        elif below_valid:
            free[best] = below
        else:
            # remove by swapping in the last region
            last = free.pop()
            if best < len(free):
                free[best] = last

    return placed


def _best_fit(free: Sequence[PlacementBox], width: float, height: float) -> int:
    """Index of the region with the smallest leftover area, or -1."""
    best_index = -1
    best_remainder = np.inf
    surface = width * height
    for index, region in enumerate(free):
        if not region.fits(width, height):
            continue
        remainder = region.area - surface
        if 0.0 <= remainder < best_remainder:
            best_index = index
            best_remainder = remainder
    return best_index


def atlas_utilization(boxes: Sequence[PlacementBox], canvas: Size2D) -> float:
    """Fraction of the canvas covered by the placement boxes."""
    polygons = [b.to_polygon() for b in boxes if b is not None and b.area > 0.0]
    if not polygons:
        return 0.0
    covered = unary_union(polygons).area
    return float(covered / (float(canvas[0]) * float(canvas[1])))
