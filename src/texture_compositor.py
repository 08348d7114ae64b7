"""
Texture compositor interface for atlas building.

Copies are deferred: ``enqueue_copy`` only records the work and ``flush``
executes everything queued so far, acting as the fence the merge waits on
before it uses the destination textures.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from skinned_mesh import Texture

logger = logging.getLogger(__name__)

PixelRect = Tuple[int, int, int, int]  # x0, y0, x1, y1

PIXEL_FORMAT_LAYOUTS: Dict[str, Tuple[int, type]] = {
    "RGBA8": (4, np.uint8),
    "BGRA8": (4, np.uint8),
    "RGB8": (3, np.uint8),
    "R8": (1, np.uint8),
    "RGBA16F": (4, np.float16),
    "RGBA32F": (4, np.float32),
}


class TextureCompositor(ABC):
    """Creates atlas textures and composites source images into them."""

    @abstractmethod
    def create_texture(
        self,
        name: str,
        size: Tuple[int, int],
        pixel_format: str,
        srgb: bool,
    ) -> Texture:
        """Allocate a blank destination texture of (width, height)."""
        ...

    @abstractmethod
    def enqueue_copy(
        self,
        source: Texture,
        destination: Texture,
        dest_rect: PixelRect,
        source_rect: Optional[PixelRect] = None,
    ) -> None:
        """Queue a copy of *source_rect* (default: whole source) into *dest_rect*."""
        ...

    @abstractmethod
    def flush(self) -> int:
        """Execute all queued copies; returns how many ran."""
        ...


@dataclass
class _PendingCopy:
    source: Texture
    destination: Texture
    dest_rect: PixelRect
    source_rect: PixelRect


class NumpyTextureCompositor(TextureCompositor):
    """In-process compositor operating on numpy pixel arrays.

    A destination region smaller or larger than the source region is filled
    by nearest-neighbour resampling.
    """

    def __init__(self):
        self._pending: List[_PendingCopy] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def create_texture(
        self,
        name: str,
        size: Tuple[int, int],
        pixel_format: str,
        srgb: bool,
    ) -> Texture:
        if pixel_format not in PIXEL_FORMAT_LAYOUTS:
            raise ValueError(f"Unsupported pixel format: {pixel_format}")
        channels, dtype = PIXEL_FORMAT_LAYOUTS[pixel_format]
        width, height = int(size[0]), int(size[1])
        pixels = np.zeros((height, width, channels), dtype=dtype)
        return Texture(name=name, pixels=pixels, pixel_format=pixel_format, srgb=srgb)

    def enqueue_copy(
        self,
        source: Texture,
        destination: Texture,
        dest_rect: PixelRect,
        source_rect: Optional[PixelRect] = None,
    ) -> None:
        if source_rect is None:
            width, height = source.size
            source_rect = (0, 0, width, height)
        self._pending.append(_PendingCopy(source, destination, dest_rect, source_rect))

    def flush(self) -> int:
        count = 0
        for copy in self._pending:
            if _blit(copy):
                count += 1
        self._pending = []
        return count


def _blit(copy: _PendingCopy) -> bool:
    dst_pixels = copy.destination.pixels
    dst_h, dst_w = dst_pixels.shape[:2]
    x0, y0, x1, y1 = copy.dest_rect
    sx0, sy0, sx1, sy1 = copy.source_rect

    target_w, target_h = x1 - x0, y1 - y0
    src_w, src_h = sx1 - sx0, sy1 - sy0
    if target_w <= 0 or target_h <= 0 or src_w <= 0 or src_h <= 0:
        return False

    region = copy.source.pixels[sy0:sy1, sx0:sx1]
    if (target_w, target_h) != (src_w, src_h):
        rows = (np.arange(target_h) * src_h) // target_h
        cols = (np.arange(target_w) * src_w) // target_w
        region = region[rows][:, cols]

    # clip to the destination
    cx0, cy0 = max(x0, 0), max(y0, 0)
    cx1, cy1 = min(x1, dst_w), min(y1, dst_h)
    if cx1 <= cx0 or cy1 <= cy0:
        logger.warning("Copy of '%s' lies outside destination '%s'",
                       copy.source.name, copy.destination.name)
        return False

    region = region[cy0 - y0:cy1 - y0, cx0 - x0:cx1 - x0]
    channels = dst_pixels.shape[2]
    dst_pixels[cy0:cy1, cx0:cx1] = region[..., :channels].astype(dst_pixels.dtype)
    return True
