import numpy as np
from numpy.linalg import norm
import pytest

from DiskAtlas import DiffractionStack
from DiskAtlas.ellipses import ellipse_columns

from conftest import (
    SHIFTS, SPOT_CENTER, SPOT_RADIUS, render_disk, render_spots
)


@pytest.fixture
def stack(disk_stack, context):
    images, _ = disk_stack
    return DiffractionStack(images, radius=SPOT_RADIUS, context=context)


def test_constructor_validates_images(context):
    with pytest.raises(ValueError):
        DiffractionStack([], radius=8, context=context)
    with pytest.raises(ValueError):
        DiffractionStack(
            [np.ones((16, 16)), np.ones((16, 18))], radius=3, context=context
        )


def test_constructor_defaults(stack):
    assert stack.inner_rad == pytest.approx(0.5 * SPOT_RADIUS)
    assert stack.outer_rad == pytest.approx(1.5 * SPOT_RADIUS)
    assert stack.thickness >= 1
    assert stack.ellipses is None
    assert stack.circ_ubound is None


def test_radius_estimated(context):
    image = render_disk((64, 64), SPOT_CENTER, SPOT_RADIUS)
    stack = DiffractionStack([image], context=context)
    assert abs(stack.radius - SPOT_RADIUS) <= 1
    assert 2 * SPOT_RADIUS <= stack.circ_ubound <= 64


def test_run_end_to_end(stack):
    ellipses = stack.run()

    positions = stack.positions.loc[:, ['dx_px', 'dy_px']].to_numpy(dtype=int)
    assert np.array_equal(positions, np.array(SHIFTS))
    assert stack.positions['connected'].all()

    assert list(stack.origin) == [2, 3]
    assert stack.acc.shape == (64 + 5, 64 + 5)

    expected = np.array(SPOT_CENTER) + stack.origin
    assert stack.spot_pos.shape == (1, 2)
    assert norm(stack.spot_pos[0] - expected) <= 1

    assert list(ellipses.columns) == ellipse_columns
    assert ellipses.shape[0] == 5
    assert len(stack.spot_maps) == 1

    fits = ellipses.set_index('image')
    assert (fits['status'] == 'ok').all()
    assert fits['is_ellipse'].all()
    for k, (dx, dy) in enumerate(SHIFTS):
        assert fits.loc[k, 'x0'] == pytest.approx(SPOT_CENTER[0] + dx, abs=0.5)
        assert fits.loc[k, 'y0'] == pytest.approx(SPOT_CENTER[1] + dy, abs=0.5)
        assert fits.loc[k, 'a'] == pytest.approx(SPOT_RADIUS, abs=1)
        assert fits.loc[k, 'b'] == pytest.approx(SPOT_RADIUS, abs=1)


def test_image_spot_positions(stack):
    stack.find_spots()
    ref = stack.image_spot_positions(0)
    for k, (dx, dy) in enumerate(SHIFTS):
        assert np.array_equal(stack.image_spot_positions(k), ref + [dx, dy])


def test_disconnected_image_is_reported(stack):
    stack.get_relative_positions()
    rel_pos = stack.rel_pos
    stack.rel_pos = rel_pos[(rel_pos['i'] != 4) & (rel_pos['j'] != 4)]

    with pytest.warns(UserWarning):
        stack.refine_positions()
    assert list(stack.positions['connected']) == [True] * 4 + [False]

    stack.align_and_average()
    stack.find_spots()
    with pytest.warns(UserWarning):
        stack.get_ellipses()

    missing = stack.ellipses[stack.ellipses['image'] == 4]
    assert missing.shape[0] == stack.spot_pos.shape[0]
    assert (missing['status'] == 'disconnected').all()
    assert missing['x0'].isna().all()
    assert list(stack.ellipses['image']) \
        == sorted(stack.ellipses['image'].tolist())


def test_estimate_symmetry_origin(context):
    pattern = render_spots(
        (64, 64), [(32, 32), (20, 32), (44, 32), (32, 20), (32, 44)]
    )
    stack = DiffractionStack(
        [pattern, pattern], radius=4, thickness=2, context=context
    )
    stack.align_and_average()
    origin_avg, origin_intersect = stack.estimate_symmetry_origin(
        origin=[33, 32], num_angles=60
    )
    assert stack.mirror_lines.shape[1] == 3
    assert origin_avg == pytest.approx(SPOT_CENTER, abs=1)
    assert origin_intersect == pytest.approx(SPOT_CENTER, abs=1)
