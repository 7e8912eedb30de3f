import numpy as np
import pytest
import torch

from roi_pool3d.coords import (
    as_pooled_shape,
    bin_bounds,
    decode_flat,
    encode_flat,
    pooled_bin_range,
    regions_as_list,
    round_half_away,
    scale_region,
)


@pytest.mark.parametrize("value, expected", [(2.5, 3), (-2.5, -3), (1.4, 1), (1.6, 2), (-0.4, 0), (0.0, 0)])
def test_round_half_away(value, expected):
    assert round_half_away(value) == expected


def test_scale_region_orders_axes_depth_first():
    box = scale_region([0, 1, 2, 3, 5, 6, 7], 1.0, 1.0)
    assert box.batch_index == 0
    assert box.start == (3, 2, 1)
    assert box.end == (7, 6, 5)
    assert box.extent == (5, 5, 5)


def test_scale_region_uses_independent_scales():
    box = scale_region([1, 4, 8, 2, 12, 16, 6], 0.5, 2.0)
    assert box.batch_index == 1
    assert box.start == (4, 4, 2)
    assert box.end == (12, 8, 6)
    assert box.extent == (9, 5, 5)


def test_inverted_region_is_one_wide():
    box = scale_region([0, 5, 5, 5, 2, 2, 2], 1.0, 1.0)
    assert box.extent == (1, 1, 1)
    assert box.start == (5, 5, 5)
    assert box.end == (2, 2, 2)


def test_contains_is_inclusive_on_rounded_bounds():
    box = scale_region([0, 1, 1, 1, 3, 3, 3], 1.0, 1.0)
    assert box.contains(1, 1, 1)
    assert box.contains(3, 3, 3)
    assert not box.contains(0, 2, 2)
    assert not box.contains(2, 2, 4)


def test_bin_bounds_even_split():
    assert bin_bounds(0, 2.0, 0, 4) == (0, 2)
    assert bin_bounds(1, 2.0, 0, 4) == (2, 4)


def test_bin_bounds_adaptive_bins_overlap():
    assert bin_bounds(0, 1.5, 0, 10) == (0, 2)
    assert bin_bounds(1, 1.5, 0, 10) == (1, 3)


def test_bin_bounds_clamps_to_volume():
    assert bin_bounds(1, 2.0, 3, 4) == (4, 4)
    assert bin_bounds(0, 2.0, -3, 4) == (0, 0)


def test_pooled_bin_range_covers_every_bin_holding_the_coordinate():
    assert pooled_bin_range(0, 0, 1.5, 2) == (0, 1)
    assert pooled_bin_range(1, 0, 1.5, 2) == (0, 2)
    assert pooled_bin_range(2, 0, 1.5, 2) == (1, 2)


def test_pooled_bin_range_is_clamped():
    assert pooled_bin_range(9, 0, 1.0, 4) == (4, 4)


def test_flat_encoding_roundtrip_on_ints():
    flat = encode_flat(2, 3, 1, 4, 5)
    assert flat == 56
    assert decode_flat(flat, 4, 5) == (2, 3, 1)


def test_flat_encoding_on_tensors():
    d = torch.tensor([0, 1, 2])
    h = torch.tensor([3, 0, 1])
    w = torch.tensor([4, 2, 0])
    flat = encode_flat(d, h, w, 4, 5)
    assert flat.tolist() == [19, 22, 45]
    dd, hh, ww = decode_flat(flat, 4, 5)
    assert torch.equal(dd, d) and torch.equal(hh, h) and torch.equal(ww, w)


def test_regions_as_list_accepts_tensors_arrays_and_lists():
    row = [0, 1, 2, 3, 4, 5, 6]
    assert regions_as_list(torch.tensor([row], dtype=torch.float32)) == [[float(v) for v in row]]
    assert regions_as_list(np.array([row])) == [[float(v) for v in row]]
    assert regions_as_list([row]) == [[float(v) for v in row]]
    assert regions_as_list(torch.tensor(row, dtype=torch.float64)) == [[float(v) for v in row]]
    assert regions_as_list(torch.zeros(0, 7)) == []


def test_regions_as_list_rejects_wrong_width():
    with pytest.raises(ValueError, match="expected 7"):
        regions_as_list([[0, 1, 2, 3, 4, 5]])


def test_as_pooled_shape():
    assert as_pooled_shape(3) == (3, 3, 3)
    assert as_pooled_shape([1, 2, 3]) == (1, 2, 3)
    assert as_pooled_shape(torch.Size([2, 2, 4])) == (2, 2, 4)
    with pytest.raises(ValueError, match="3 entries"):
        as_pooled_shape((2, 2))
