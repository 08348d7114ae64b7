"""Tests for atlas_packer module."""
import itertools

import numpy as np
import pytest

from atlas_packer import (
    PlacementBox,
    UVTransform,
    atlas_utilization,
    pack_rectangles,
    weight_rectangles,
)


def assert_no_overlap(boxes):
    for a, b in itertools.combinations(boxes, 2):
        overlap = a.to_polygon().intersection(b.to_polygon()).area
        assert overlap == pytest.approx(0.0, abs=1e-9)


def assert_inside(boxes, canvas):
    for b in boxes:
        assert b.min_x >= 0.0 and b.min_y >= 0.0
        assert b.max_x <= canvas[0] + 1e-9
        assert b.max_y <= canvas[1] + 1e-9


class TestWeighting:

    def test_weight_is_width_over_canvas_width(self):
        rects = weight_rectangles([(256, 64), (512, 512)], (1024, 2048))
        assert rects[0].weight == pytest.approx(0.25)
        assert rects[1].weight == pytest.approx(0.5)
        assert [r.source_index for r in rects] == [0, 1]


class TestPackRectangles:

    def test_single_rectangle_at_origin(self):
        boxes = pack_rectangles([(256, 128)], (1024, 1024))
        assert boxes == [PlacementBox(0.0, 0.0, 256.0, 128.0)]

    def test_fitting_set_keeps_full_size(self):
        sizes = [(512, 512), (256, 256), (256, 256), (128, 64), (512, 256)]
        canvas = (1024, 1024)
        boxes = pack_rectangles(sizes, canvas)
        assert len(boxes) == len(sizes)
        for (w, h), b in zip(sizes, boxes):
            assert b.width == pytest.approx(w)
            assert b.height == pytest.approx(h)
        assert_no_overlap(boxes)
        assert_inside(boxes, canvas)

    def test_exact_quarters_fill_canvas(self):
        canvas = (512, 512)
        boxes = pack_rectangles([(256, 256)] * 4, canvas)
        assert_no_overlap(boxes)
        assert_inside(boxes, canvas)
        assert atlas_utilization(boxes, canvas) == pytest.approx(1.0)

    def test_boxes_returned_in_input_order(self):
        sizes = [(64, 64), (512, 128), (256, 256)]
        boxes = pack_rectangles(sizes, (1024, 1024))
        for (w, h), b in zip(sizes, boxes):
            assert (b.width, b.height) == pytest.approx((w, h))
        # widest rectangle is placed first, at the origin
        assert (boxes[1].min_x, boxes[1].min_y) == (0.0, 0.0)

    def test_equal_weights_keep_input_order(self):
        boxes = pack_rectangles([(100, 50), (100, 80)], (1000, 1000))
        assert (boxes[0].min_x, boxes[0].min_y) == (0.0, 0.0)

    def test_oversized_set_shrinks_until_it_fits(self):
        sizes = [(512, 512)] * 5
        canvas = (1024, 1024)
        boxes = pack_rectangles(sizes, canvas)
        assert_no_overlap(boxes)
        assert_inside(boxes, canvas)
        widths = {round(b.width, 6) for b in boxes}
        assert len(widths) == 1
        assert widths.pop() < 512

    def test_oversized_single_rectangle(self):
        boxes = pack_rectangles([(2048, 100)], (1024, 1024))
        assert boxes[0].width <= 1024
        assert boxes[0].height == pytest.approx(boxes[0].width * 100 / 2048)

    def test_zero_area_rectangle_does_not_block(self):
        boxes = pack_rectangles([(0, 0), (1024, 1024)], (1024, 1024))
        assert boxes[0].area == 0.0
        assert boxes[1].width == pytest.approx(1024)

    def test_random_fitting_sets(self, rng):
        canvas = (1024, 1024)
        for _ in range(20):
            count = int(rng.integers(1, 12))
            sizes = [(int(w), int(h)) for w, h in rng.integers(8, 200, size=(count, 2))]
            boxes = pack_rectangles(sizes, canvas)
            assert_no_overlap(boxes)
            assert_inside(boxes, canvas)

    def test_empty_input_raises(self):
        with pytest.raises(ValueError):
            pack_rectangles([], (1024, 1024))

    def test_invalid_canvas_raises(self):
        with pytest.raises(ValueError):
            pack_rectangles([(10, 10)], (0, 1024))

    def test_negative_size_raises(self):
        with pytest.raises(ValueError):
            pack_rectangles([(-1, 10)], (1024, 1024))

    @pytest.mark.parametrize("size", [(np.inf, 10), (10, np.nan)])
    def test_non_finite_size_raises(self, size):
        with pytest.raises(ValueError, match="finite"):
            pack_rectangles([size], (1024, 1024))

    def test_non_finite_canvas_raises(self):
        with pytest.raises(ValueError, match="finite"):
            pack_rectangles([(10, 10)], (np.inf, 1024))


class TestUVTransforms:

    def test_box_uv_transform(self):
        t = PlacementBox(256.0, 512.0, 512.0, 768.0).uv_transform((1024, 1024))
        assert t.scale == pytest.approx((0.25, 0.25))
        assert t.offset == pytest.approx((0.25, 0.5))

    def test_uv_transforms_map_into_unit_square(self):
        canvas = (1024, 512)
        boxes = pack_rectangles([(300, 200), (700, 100), (128, 128), (64, 300)], canvas)
        corners = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        for b in boxes:
            mapped = b.uv_transform(canvas).apply(corners)
            assert mapped.min() >= -1e-9
            assert mapped.max() <= 1.0 + 1e-9

    def test_identity(self):
        uvs = np.array([[0.3, 0.7]])
        np.testing.assert_allclose(UVTransform.identity().apply(uvs), uvs)


class TestPlacementBox:

    def test_pixel_rect_rounds_edges(self):
        assert PlacementBox(10.2, 20.6, 30.4, 40.5).pixel_rect() == (10, 21, 30, 40)

    def test_adjacent_sub_pixel_boxes_stay_disjoint(self):
        edges = np.arange(0.0, 4.0, 0.3)
        boxes = [PlacementBox(a, 0.0, b, 1.0) for a, b in zip(edges[:-1], edges[1:])]
        spans = [(b.pixel_rect()[0], b.pixel_rect()[2]) for b in boxes]
        for (_, prev_end), (start, _) in zip(spans, spans[1:]):
            assert prev_end <= start

    def test_utilization_of_half_canvas(self):
        boxes = [PlacementBox(0, 0, 50, 100)]
        assert atlas_utilization(boxes, (100, 100)) == pytest.approx(0.5)
