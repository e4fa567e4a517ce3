import numpy as np
import pytest

from vargrad import ShapeMismatchError, apply_forward, variable
from vargrad.functions import (
    AddBias,
    LogSoftmax,
    MatMul,
    Neg,
    NegativeLogLikelihood,
    ReLU,
    Reciprocal,
    Scale,
    Sigmoid,
    Tanh,
)
from vargrad.testing import grad_check, numerical_grad
from tests.utils import assert_close, assert_grad_close, make_torch, make_variable


def _f64(x_np, device="cpu"):
    return variable(x_np, device=device, dtype=np.float64)


@pytest.mark.parametrize(
    "make_func",
    [Sigmoid, Tanh, Neg, lambda: Scale(-2.5), LogSoftmax],
    ids=["sigmoid", "tanh", "neg", "scale", "log_softmax"],
)
def test_unary_gradients_match_finite_differences(make_func, rng, device):
    x = _f64(rng.normal(size=(3, 4)), device)
    gy = _f64(rng.normal(size=(3, 4)), device)
    grad_check(make_func, [x], gy)


def test_reciprocal_gradient(rng, device):
    x = _f64(rng.uniform(0.5, 2.0, size=(5,)), device)
    gy = _f64(rng.normal(size=(5,)), device)
    grad_check(Reciprocal, [x], gy)


def test_matmul_gradient(rng, device):
    a = _f64(rng.normal(size=(3, 4)), device)
    b = _f64(rng.normal(size=(4, 2)), device)
    gy = _f64(rng.normal(size=(3, 2)), device)
    grad_check(MatMul, [a, b], gy)


def test_add_bias_gradient(rng, device):
    x = _f64(rng.normal(size=(3, 4)), device)
    b = _f64(rng.normal(size=(4,)), device)
    gy = _f64(rng.normal(size=(3, 4)), device)
    grad_check(AddBias, [x, b], gy)


def test_nll_gradient_skips_integer_targets(rng):
    logp = _f64(rng.normal(size=(4, 3)))
    t = variable([2, -100, 0, 1])
    gy = _f64(1.0)
    grad_check(NegativeLogLikelihood, [logp, t], gy)
    assert numerical_grad(NegativeLogLikelihood, [logp, t], gy)[1] is None


def test_relu_values_and_gradient_at_zero(device):
    x = variable([-1.0, 0.0, 2.0], device=device)
    f = ReLU()
    assert_close(f.forward(x).numpy(), [0.0, 0.0, 2.0])
    assert_close(f.backward(variable([5.0, 5.0, 5.0], device=device)).numpy(), [0.0, 0.0, 5.0])


def test_operations_return_untracked_outputs(rng):
    x = make_variable(rng.normal(size=(2, 3)))
    y = Tanh().forward(x)
    assert y.requires_grad is False
    assert y.grad_fn is None
    assert y.type == x.type


def test_log_softmax_matches_torch(rng, device):
    x_np = rng.normal(size=(2, 3, 4, 5)).astype(np.float32)

    xt = make_torch(x_np)
    x = make_variable(x_np, device=device)

    yt = xt.log_softmax(dim=-1)
    y = apply_forward(LogSoftmax(), x)

    yt.sum().backward()
    y.backward(np.ones(x_np.shape, dtype=np.float32))

    assert_close(y.numpy(), yt.detach().cpu().numpy(), atol=3e-6, rtol=3e-5)
    assert_grad_close(x, xt, atol=3e-6, rtol=3e-5)


def test_log_softmax_numerical_stability_large_values(device):
    x_np = np.array(
        [[1000.0, 1001.0, 999.0], [-1000.0, -1001.0, -999.0], [50.0, 0.0, -50.0]],
        dtype=np.float32,
    )

    xt = make_torch(x_np)
    x = make_variable(x_np, device=device)

    yt = xt.log_softmax(dim=-1)
    y = apply_forward(LogSoftmax(), x)

    yt.sum().backward()
    y.backward(np.ones(x_np.shape, dtype=np.float32))

    assert np.all(np.isfinite(y.numpy()))
    assert_close(y.numpy(), yt.detach().cpu().numpy(), atol=3e-6, rtol=3e-5)
    assert_grad_close(x, xt, atol=3e-6, rtol=3e-5)


def test_nll_all_targets_ignored_is_zero():
    logp = variable([[-0.5, -1.0]], requires_grad=True)
    loss = apply_forward(NegativeLogLikelihood(), logp, variable([-100]))
    loss.backward()
    assert loss.numpy() == 0.0
    assert_close(logp.grad_sliced(), [[0.0, 0.0]])


def test_nll_sum_reduction():
    logp = variable([[-0.5, -1.0], [-2.0, -0.25]])
    f = NegativeLogLikelihood(size_average=False)
    assert_close(f.forward(logp, variable([1, 0])).numpy(), 3.0)


@pytest.mark.parametrize(
    "func,shapes",
    [
        (MatMul, [(2, 3), (2, 3)]),
        (AddBias, [(2, 3), (2,)]),
    ],
)
def test_shape_checks(func, shapes):
    inputs = [variable(np.zeros(s)) for s in shapes]
    with pytest.raises(ShapeMismatchError):
        func().forward(*inputs)


def test_nll_rejects_mismatched_batch():
    with pytest.raises(ShapeMismatchError):
        NegativeLogLikelihood().forward(variable(np.zeros((3, 2))), variable([0, 1]))
