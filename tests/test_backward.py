import pytest
import torch

from roi_pool3d.pooling import roi_pool3d_backward, roi_pool3d_forward

FULL = [0, 0, 0, 0, 3, 3, 3]
SHAPE = (1, 1, 4, 4, 4)


def arange_volume(shape=SHAPE):
    b, c, d, h, w = shape
    return torch.arange(d * h * w, dtype=torch.float32).view(d, h, w).expand(b, c, d, h, w).clone()


def pool_and_route(volume, regions, pooled_shape, grad_output=None, scale_xy=1.0, scale_z=1.0):
    output, argmax = roi_pool3d_forward(volume, regions, scale_xy, scale_z, pooled_shape)
    if grad_output is None:
        grad_output = torch.ones_like(output)
    return roi_pool3d_backward(grad_output, argmax, regions, scale_xy, scale_z, tuple(volume.shape))


def test_gradient_lands_on_selected_elements_only():
    grad = pool_and_route(arange_volume(), [FULL], (2, 2, 2))
    assert grad.shape == SHAPE
    assert grad.sum() == 8.0
    for d in (1, 3):
        for h in (1, 3):
            for w in (1, 3):
                assert grad[0, 0, d, h, w] == 1.0
    assert torch.count_nonzero(grad) == 8


def test_gradient_values_follow_their_bins():
    volume = torch.ones(SHAPE)
    grad_output = torch.arange(1, 9, dtype=torch.float32).view(1, 1, 2, 2, 2)
    grad = pool_and_route(volume, [FULL], (2, 2, 2), grad_output)
    for pd in range(2):
        for ph in range(2):
            for pw in range(2):
                assert grad[0, 0, 2 * pd, 2 * ph, 2 * pw] == grad_output[0, 0, pd, ph, pw]
    assert grad.sum() == grad_output.sum()


def test_overlapping_bins_accumulate():
    # extent 3 over 2 bins: bins [0,2) and [1,3) share the centre on every axis
    volume = torch.zeros(1, 1, 3, 3, 3)
    volume[0, 0, 1, 1, 1] = 1.0
    grad = pool_and_route(volume, [[0, 0, 0, 0, 2, 2, 2]], (2, 2, 2))
    assert grad[0, 0, 1, 1, 1] == 8.0
    assert grad.sum() == 8.0


def test_overlapping_regions_accumulate():
    grad = pool_and_route(arange_volume(), [FULL, FULL], (1, 1, 1))
    assert grad[0, 0, 3, 3, 3] == 2.0
    assert grad.sum() == 2.0


def test_regions_only_touch_their_batch():
    volume = arange_volume((2, 1, 4, 4, 4))
    grad = pool_and_route(volume, [[1, 0, 0, 0, 3, 3, 3]], (2, 2, 2))
    assert torch.all(grad[0] == 0.0)
    assert grad[1].sum() == 8.0


def test_region_outside_volume_gives_no_gradient():
    grad = pool_and_route(arange_volume(), [[0, 5, 5, 5, 4, 4, 4]], (2, 2, 2))
    assert torch.all(grad == 0.0)


def test_inverted_region_gets_no_gradient():
    # Forward pools the element at the rounded start, but it lies past the rounded end
    volume = arange_volume()
    output, argmax = roi_pool3d_forward(volume, [[0, 3, 3, 3, 1, 1, 1]], 1.0, 1.0, (1, 1, 1))
    assert argmax[0, 0, 0, 0, 0] == 63
    grad = roi_pool3d_backward(torch.ones_like(output), argmax, [[0, 3, 3, 3, 1, 1, 1]], 1.0, 1.0, SHAPE)
    assert torch.all(grad == 0.0)


def test_selection_outside_candidate_bins_is_ignored():
    output, argmax = roi_pool3d_forward(arange_volume(), [FULL], 1.0, 1.0, (2, 2, 2))
    # Point bin (0, 0, 0) at an element only bin (1, 1, 1) can cover
    argmax[0, 0, 0, 0, 0] = 63
    grad = roi_pool3d_backward(torch.ones_like(output), argmax, [FULL], 1.0, 1.0, SHAPE)
    assert grad[0, 0, 3, 3, 3] == 1.0
    assert grad.sum() == 7.0


def test_scaled_region():
    volume = arange_volume()
    grad = pool_and_route(volume, [[0, 0, 0, 0, 6, 6, 1]], (1, 1, 1), scale_xy=0.5, scale_z=2.0)
    assert grad[0, 0, 2, 3, 3] == 1.0
    assert grad.sum() == 1.0


def test_multichannel_gradient():
    volume = arange_volume((1, 2, 4, 4, 4))
    volume[0, 1] = -volume[0, 1]
    grad_output = torch.tensor([3.0, 5.0]).view(1, 2, 1, 1, 1)
    grad = pool_and_route(volume, [FULL], (1, 1, 1), grad_output)
    assert grad[0, 0, 3, 3, 3] == 3.0
    assert grad[0, 1, 0, 0, 0] == 5.0
    assert grad.sum() == 8.0


def test_gradient_dtype_follows_grad_output():
    volume = arange_volume().double()
    grad = pool_and_route(volume, [FULL], (2, 2, 2))
    assert grad.dtype == torch.float64


def test_rejects_mismatched_shapes():
    output, argmax = roi_pool3d_forward(arange_volume(), [FULL], 1.0, 1.0, (2, 2, 2))
    with pytest.raises(ValueError, match="does not match"):
        roi_pool3d_backward(torch.ones(1, 1, 2, 2, 1), argmax, [FULL], 1.0, 1.0, SHAPE)
    with pytest.raises(ValueError, match="regions"):
        roi_pool3d_backward(torch.ones_like(output), argmax, [FULL, FULL], 1.0, 1.0, SHAPE)
    with pytest.raises(ValueError, match="channels"):
        roi_pool3d_backward(torch.ones_like(output), argmax, [FULL], 1.0, 1.0, (1, 2, 4, 4, 4))


@pytest.mark.parametrize("batch_index", [-1, 1])
def test_batch_index_outside_volume_gets_no_gradient(batch_index):
    output, argmax = roi_pool3d_forward(arange_volume(), [FULL], 1.0, 1.0, (2, 2, 2))
    region = [[batch_index, 0, 0, 0, 3, 3, 3]]
    grad = roi_pool3d_backward(torch.ones_like(output), argmax, region, 1.0, 1.0, SHAPE)
    assert torch.all(grad == 0.0)


def test_nan_inputs_route_gradient_to_the_numeric_maximum():
    volume = arange_volume()
    volume[0, 0, 0, 0, 1] = float("nan")
    grad = pool_and_route(volume, [FULL], (1, 1, 1))
    assert grad[0, 0, 3, 3, 3] == 1.0
    assert grad.sum() == 1.0
