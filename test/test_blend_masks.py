import numpy as np
import pytest
from PIL import Image

from birdview.blend_masks import BlendMaskBuilder, save_blend_weights
from birdview.config import ADJACENT_PAIRS, CAMERA_ORDER, CameraPosition, RigConfig
from birdview.remap import RemapTable, build_remap_table

FRONT = CameraPosition.FRONT
LEFT = CameraPosition.LEFT


def full_view_tables(size=(600, 600)):
    width, height = size
    return [
        RemapTable(np.zeros((height, width), np.float32), np.zeros((height, width), np.float32),
                   np.ones((height, width), dtype=bool), (640, 480), p.value)
        for p in CAMERA_ORDER
    ]


@pytest.fixture(scope="module")
def full_view():
    return BlendMaskBuilder(RigConfig()).build(full_view_tables())


def test_sectors_leave_vehicle_uncovered():
    config = RigConfig()
    x_left, x_right, y_top, y_bottom = config.car_boundaries
    sectors = BlendMaskBuilder(config).sector_masks()

    assert sectors.shape == (4, 600, 600)
    assert not sectors[:, y_top:y_bottom, x_left:x_right].any()
    assert sectors[FRONT.index, y_top - 1, 300] and not sectors[FRONT.index, y_top, 300]
    assert sectors[LEFT.index, 300, x_left - 1] and not sectors[LEFT.index, 300, x_left]


def test_overlaps_are_canvas_corners(full_view):
    _, overlaps, _ = full_view
    x_left, x_right, y_top, y_bottom = RigConfig().car_boundaries

    assert set(overlaps) == set(ADJACENT_PAIRS)
    assert overlaps[(FRONT, LEFT)].sum() == x_left * y_top
    assert overlaps[(CameraPosition.REAR, CameraPosition.RIGHT)].sum() == (600 - x_right) * (600 - y_bottom)


def test_weights_partition_unity(full_view):
    coverage, _, weights = full_view
    covered = coverage.any(axis=0)

    assert weights.dtype == np.float32
    np.testing.assert_allclose(weights.sum(axis=0)[covered], 1.0, atol=1e-6)
    assert np.all(weights[:, ~covered] == 0)
    assert weights.min() >= 0.0 and weights.max() <= 1.0


def test_weights_are_one_where_only_one_camera_sees(full_view):
    _, _, weights = full_view
    assert weights[FRONT.index, 100, 300] == 1.0
    assert weights[LEFT.index, 300, 100] == 1.0


def test_weights_ramp_across_overlap(full_view):
    _, _, weights = full_view
    # Near the front-only strip the front camera dominates; near the left-only strip it fades out
    assert weights[FRONT.index, 10, 265] > 0.5 > weights[FRONT.index, 220, 10]
    corner = weights[:, :200, :200]
    assert np.any((corner[FRONT.index] > 0.05) & (corner[FRONT.index] < 0.95))


def test_weights_for_calibrated_rig(rig):
    tables = [build_remap_table(rig.camera(p), rig.homographies[p], rig.config.canvas.size)
              for p in CAMERA_ORDER]
    coverage, overlaps, weights = BlendMaskBuilder(rig.config).build(tables)

    covered = coverage.any(axis=0)
    assert covered.sum() > 0
    np.testing.assert_allclose(weights.sum(axis=0)[covered], 1.0, atol=1e-6)
    assert np.all(weights[:, ~covered] == 0)
    assert all(mask.any() for mask in overlaps.values())


def test_table_count_and_size_are_checked():
    builder = BlendMaskBuilder(RigConfig())
    with pytest.raises(ValueError):
        builder.coverage(full_view_tables()[:3])
    with pytest.raises(ValueError):
        builder.coverage(full_view_tables((300, 300)))


def test_save_blend_weights_as_rgba(full_view, tmp_path):
    _, _, weights = full_view
    path = tmp_path / "weights.png"
    save_blend_weights(weights, path)

    with Image.open(path) as image:
        assert image.mode == "RGBA"
        assert image.size == (600, 600)
        pixels = np.asarray(image)
    assert tuple(pixels[100, 300]) == (255, 0, 0, 0)
