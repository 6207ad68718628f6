import numpy as np
import pandas as pd
import pytest

from DiskAtlas.errors import DisconnectedStack
from DiskAtlas.fourier import extended_gauss, create_annulus, create_circle
from DiskAtlas.image import hann_2d
from DiskAtlas.registration import (
    get_image_pairs,
    img_rel_pos,
    refine_rel_pos,
    align_and_avg,
    create_spot_maps,
)


def exact_rel_pos(offsets, pairs, corr=1.):
    return pd.DataFrame(
        [[*(offsets[j] - offsets[i]), corr, i, j] for i, j in pairs],
        columns=['dx', 'dy', 'corr', 'i', 'j'],
    )


def test_get_image_pairs():
    assert get_image_pairs(4) == [
        (0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)
    ]
    assert get_image_pairs(4, max_sep=1) == [(0, 1), (1, 2), (2, 3)]


def test_refine_rel_pos_is_exact_for_noiseless_pairs():
    offsets = np.array([[0., 0.], [1.25, -2.25], [-3., 4.], [0.75, 0.5]])
    rel_pos = exact_rel_pos(offsets, get_image_pairs(4))
    positions = refine_rel_pos(rel_pos, 4)

    assert positions.loc[:, ['dx', 'dy']].to_numpy() == pytest.approx(
        offsets, abs=1e-10
    )
    assert positions['connected'].all()
    assert list(positions['dx_px']) == [0, 1, -3, 1]


def test_refine_rel_pos_chain_of_pairs():
    offsets = np.array([[0., 0.], [2., 1.], [5., -1.]])
    rel_pos = exact_rel_pos(offsets, [(0, 1), (1, 2)])
    positions = refine_rel_pos(rel_pos, 3)
    assert positions.loc[2, ['dx', 'dy']].to_numpy(dtype=float) \
        == pytest.approx([5., -1.])


def test_refine_rel_pos_disconnected_images():
    offsets = np.zeros((4, 2))
    rel_pos = exact_rel_pos(offsets, [(0, 1), (2, 3)])

    with pytest.warns(UserWarning):
        positions = refine_rel_pos(rel_pos, 4)
    assert list(positions['connected']) == [True, True, False, False]
    assert positions.loc[[2, 3], 'dx'].isna().all()

    with pytest.raises(DisconnectedStack) as err:
        refine_rel_pos(rel_pos, 4, strict=True)
    assert err.value.indices == [2, 3]
    assert err.value.status == 'disconnected'


def test_refine_rel_pos_ignores_low_correlation_pairs():
    offsets = np.array([[0., 0.], [1., 1.], [2., 2.]])
    rel_pos = exact_rel_pos(offsets, get_image_pairs(3))
    rel_pos.loc[rel_pos['j'] == 2, 'corr'] = 0.01
    with pytest.warns(UserWarning):
        positions = refine_rel_pos(rel_pos, 3, min_corr=0.1)
    assert not positions.loc[2, 'connected']


def test_align_and_avg():
    images = [np.full((4, 5), 1.), np.full((4, 5), 3.)]
    positions = refine_rel_pos(
        exact_rel_pos(np.array([[0., 0.], [2., -1.]]), [(0, 1)]), 2
    )
    acc, num_overlap, origin = align_and_avg(images, positions)

    assert acc.shape == (5, 7)
    assert list(origin) == [2, 0]
    assert num_overlap.max() == 2
    assert acc[0, 2] == 1.
    assert acc[1, 2] == 2.
    assert np.isnan(acc[0, 0])
    assert acc[4, 0] == 3.


def test_img_rel_pos_recovers_stack_shifts(disk_stack, context):
    images, shifts = disk_stack
    shape = images[0].shape
    gauss_fft = extended_gauss(shape, 1., context)
    rel_pos = img_rel_pos(
        images,
        create_annulus(shape, 8, 2, context) * gauss_fft,
        create_circle(shape, 8, context) * gauss_fft,
        gauss_fft=gauss_fft,
        window=hann_2d(shape),
        context=context,
    )
    assert len(rel_pos) == 10
    assert (rel_pos['i'] < rel_pos['j']).all()

    positions = refine_rel_pos(rel_pos, len(images))
    assert np.array_equal(
        positions.loc[:, ['dx_px', 'dy_px']].to_numpy(dtype=int), shifts
    )


def test_img_rel_pos_rejects_mixed_shapes(context):
    filt = np.ones((8, 8))
    with pytest.raises(ValueError):
        img_rel_pos(
            [np.ones((8, 8)), np.ones((8, 9))], filt, filt, context=context
        )


def test_create_spot_maps_places_reference_spot():
    images = [np.zeros((20, 20)), np.zeros((20, 20))]
    images[0][10, 10] = 1.
    images[1][9, 12] = 5.
    positions = refine_rel_pos(
        exact_rel_pos(np.array([[0., 0.], [2., -1.]]), [(0, 1)]), 2
    )
    _, _, origin = align_and_avg(images, positions)
    spot_pos = np.array([[10, 10]]) + origin

    spot_maps = create_spot_maps(images, spot_pos, positions, origin, 3)
    assert len(spot_maps) == 1
    spot_map = spot_maps[0]
    assert spot_map.shape == (8, 9)
    # Reference spot at [radius - min(dx), radius - min(dy)] = [3, 4]
    assert spot_map[4, 3] == pytest.approx(0.5)
