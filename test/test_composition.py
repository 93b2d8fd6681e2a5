import dataclasses
import threading

import numpy as np
import pytest

from birdview.composition import (BlendingMethod, Composition, FrameResult, RemapSource,
                                  build_composition_state)
from birdview.config import CAMERA_ORDER, CameraPosition, CanvasConfig, RigConfig
from birdview.exceptions import ConfigError, RuntimeMismatch

FRONT = CameraPosition.FRONT
REAR = CameraPosition.REAR


def uniform_frames(level=120, sizes=None):
    sizes = sizes or {}
    frames = []
    for position in CAMERA_ORDER:
        width, height = sizes.get(position, (640, 480))
        frames.append(np.full((height, width, 3), level, dtype=np.uint8))
    return frames


@pytest.fixture(scope="module")
def state(rig):
    return build_composition_state(rig.snapshot(), rig.config)


@pytest.fixture
def composition(rig):
    with Composition(rig.config, rig.snapshot()) as composition:
        yield composition


def test_state_covers_canvas_around_vehicle(rig, state):
    assert len(state.tables) == 4
    assert state.frame_sizes == ((640, 480),) * 4
    assert state.weights.shape == (4, 600, 600)

    x_left, x_right, y_top, y_bottom = rig.config.car_boundaries
    assert not state.coverage[:, y_top:y_bottom, x_left:x_right].any()
    assert state.coverage.any(axis=0).mean() > 0.5
    with pytest.raises(ValueError):
        state.weights[0, 0, 0] = 1.0


def test_uniform_frames_compose_to_uniform_canvas(rig, composition):
    canvas = composition.run(uniform_frames(120))
    state = composition.state

    assert canvas.shape == (600, 600, 3)
    assert canvas.dtype == np.uint8
    covered = state.coverage.any(axis=0)
    assert np.all(canvas[covered] == 120)
    assert np.all(canvas[~covered] == 0)

    x_left, x_right, y_top, y_bottom = rig.config.car_boundaries
    assert np.all(canvas[y_top:y_bottom, x_left:x_right] == 0)


def test_tone_balancing_reports_gains(composition):
    frames = uniform_frames(120)
    frames[FRONT.index][:] = 90
    result = composition.process_frame(frames)

    assert result.ok
    assert result.gains[FRONT.index] > 1.0
    assert result.processing_time_ms > 0


def test_poisson_blending(rig):
    composition = Composition(rig.config, rig.snapshot(), method=BlendingMethod.POISSON,
                              tone_balance=False)
    canvas = composition.run(uniform_frames(120))

    covered = composition.state.coverage.any(axis=0)
    assert canvas.shape == (600, 600, 3)
    assert canvas.dtype == np.uint8
    assert np.median(np.abs(canvas[covered].astype(int) - 120)) <= 1


def test_car_image_is_drawn(rig):
    car = np.full((50, 30, 3), 77, dtype=np.uint8)
    composition = Composition(rig.config, rig.snapshot(), car_image=car)
    canvas = composition.run(uniform_frames(120))

    x_left, x_right, y_top, y_bottom = rig.config.car_boundaries
    assert np.all(canvas[y_top:y_bottom, x_left:x_right] == 77)


def test_calibration_swap_leaves_old_state_intact(rig, composition):
    old_state = composition.state
    old_tables = old_state.tables

    new_snapshot = rig.snapshot().rescaled(FRONT, (1280, 960))
    new_state = composition.update_calibration(new_snapshot)

    assert composition.state is new_state
    assert old_state.tables is old_tables
    assert old_state.frame_sizes[FRONT.index] == (640, 480)
    assert new_state.frame_sizes[FRONT.index] == (1280, 960)


def test_frames_see_a_whole_state_during_swaps(rig, composition):
    snapshots = [rig.snapshot(), rig.snapshot().rescaled(FRONT, (1280, 960))]
    stop = threading.Event()

    def swap():
        i = 0
        while not stop.is_set():
            composition.update_calibration(snapshots[i % 2])
            i += 1

    worker = threading.Thread(target=swap)
    worker.start()
    try:
        for _ in range(3):
            result = composition.process_frame(uniform_frames(120))
            assert result.ok, result.error
    finally:
        stop.set()
        worker.join()


def test_uniform_rescale_recovers(rig, composition):
    frames = uniform_frames(120, {FRONT: (1280, 960)})
    result = composition.process_frame(frames)

    assert result.ok
    assert result.recovered
    assert composition.state.frame_sizes[FRONT.index] == (1280, 960)
    covered = composition.state.coverage.any(axis=0)
    assert np.all(result.image[covered] == 120)

    again = composition.process_frame(frames)
    assert again.ok and not again.recovered


def test_recovered_table_scales_lookups(rig, composition):
    before = composition.state.tables[FRONT.index]
    composition.run(uniform_frames(120, {FRONT: (1280, 960)}))
    after = composition.state.tables[FRONT.index]

    both = before.valid & after.valid
    assert both.sum() > 0.9 * before.valid.sum()
    np.testing.assert_allclose(after.map_x[both], 2.0 * before.map_x[both], atol=2e-2)
    np.testing.assert_allclose(after.map_y[both], 2.0 * before.map_y[both], atol=2e-2)


def test_aspect_change_fails_the_frame(rig, composition):
    result = composition.process_frame(uniform_frames(120, {FRONT: (640, 360)}))

    assert isinstance(result, FrameResult)
    assert not result.ok
    assert result.image is None
    assert "front" in result.error

    with pytest.raises(RuntimeMismatch):
        composition.run(uniform_frames(120, {FRONT: (640, 360)}))
    assert composition.state.frame_sizes[FRONT.index] == (640, 480)


def test_missing_calibration_or_frames(rig):
    composition = Composition(rig.config)
    assert composition.state is None
    assert not composition.process_frame(uniform_frames()).ok

    composition.update_calibration(rig.snapshot())
    with pytest.raises(ConfigError):
        composition.run(uniform_frames()[:3])


def test_canvas_size_must_match_calibration(rig):
    config = RigConfig(canvas=CanvasConfig(width=800, height=800))
    with pytest.raises(ConfigError):
        build_composition_state(rig.snapshot(), config)


def test_camera_to_ground(rig, composition):
    ground = np.array([[0.3, 3.4], [-0.4, 3.9]])
    pixels = rig.ground_pixels(FRONT, ground)
    np.testing.assert_allclose(composition.camera_to_ground(FRONT, pixels), ground, atol=1e-4)


def test_recovery_keeps_a_newer_calibration(rig, composition):
    stale = composition.state

    homographies = list(rig.snapshot().homographies)
    shifted = homographies[FRONT.index].copy()
    shifted[0, 2] += 5.0
    homographies[FRONT.index] = shifted
    composition.update_calibration(dataclasses.replace(rig.snapshot(), homographies=tuple(homographies)))

    recovered = composition._recover(stale, uniform_frames(120, {REAR: (1280, 960)}))

    assert composition.state is recovered
    np.testing.assert_allclose(recovered.snapshot.homography(FRONT), shifted)
    assert recovered.frame_sizes[REAR.index] == (1280, 960)
    assert stale.frame_sizes[REAR.index] == (640, 480)


def test_extrinsics_remap_source(rig, state):
    with Composition(rig.config, rig.snapshot(), tone_balance=False,
                     remap_source=RemapSource.EXTRINSICS) as composition:
        canvas = composition.run(uniform_frames(120))
        extrinsics_state = composition.state

    covered = extrinsics_state.coverage.any(axis=0)
    assert covered.sum() >= state.coverage.any(axis=0).sum()
    assert np.all(canvas[covered] == 120)
    assert np.all(canvas[~covered] == 0)


def test_closed_composition_rejects_frames(rig):
    composition = Composition(rig.config, rig.snapshot())
    composition.run(uniform_frames(120))
    composition.close()

    with pytest.raises(RuntimeError):
        composition.run(uniform_frames(120))
