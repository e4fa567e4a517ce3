"""
Finite-difference gradient checking for :class:`~vargrad.function.Function`
implementations.
"""
from typing import Callable, List, Optional, Sequence

import numpy as np

from vargrad.function import Function
from vargrad.variable import Variable, variable


def numerical_grad(
    make_func: Callable[[], Function],
    inputs: Sequence[Variable],
    grad_output: Variable,
    eps: float = 1e-3,
) -> List[Optional[np.ndarray]]:
    """
    Estimate input gradients of a single-output function by central differences.

    For every element ``x[i]`` of every floating input, the forward pass is
    evaluated at ``x[i] + eps`` and ``x[i] - eps`` and the gradient is
    ``sum((y+ - y-) * gy) / (2 * eps)``.

    Parameters
    ----------
    make_func : callable
        Returns a fresh function instance; one is created per evaluation.
    inputs : sequence of Variable
        Point at which to differentiate. Not modified.
    grad_output : Variable
        Upstream gradient ``gy`` with the output's shape.
    eps : float, default 1e-3
        Perturbation size.

    Returns
    -------
    list of numpy.ndarray or None
        Host arrays shaped like each input; None for non-floating inputs.
    """
    hosts = [x.numpy().astype(np.float64) for x in inputs]
    gy = grad_output.numpy().astype(np.float64)

    def evaluate(arrays: Sequence[np.ndarray]) -> np.ndarray:
        xs = [variable(a, device=x.device, dtype=x.dtype) for a, x in zip(arrays, inputs)]
        return make_func().forward(*xs).numpy().astype(np.float64)

    grads: List[Optional[np.ndarray]] = []
    for k, x in enumerate(inputs):
        if x.dtype.kind != "f":
            grads.append(None)
            continue
        g = np.zeros_like(hosts[k])
        flat = hosts[k].reshape(-1)
        for i in range(flat.size):
            orig = flat[i]
            flat[i] = orig + eps
            y_plus = evaluate(hosts)
            flat[i] = orig - eps
            y_minus = evaluate(hosts)
            flat[i] = orig
            g.reshape(-1)[i] = np.sum((y_plus - y_minus) * gy) / (2 * eps)
        grads.append(g)
    return grads


def grad_check(
    make_func: Callable[[], Function],
    inputs: Sequence[Variable],
    grad_output: Variable,
    eps: float = 1e-3,
    rtol: float = 1e-3,
    atol: float = 1e-5,
) -> None:
    """
    Assert that ``backward`` agrees with :func:`numerical_grad`.

    Raises
    ------
    AssertionError
        With the offending input index and the largest deviation.
    """
    func = make_func()
    func.forward(*inputs)
    analytic = func.backward(grad_output)
    if analytic is None or isinstance(analytic, Variable):
        analytic = (analytic,)
    numeric = numerical_grad(make_func, inputs, grad_output, eps)
    for k, (a, n) in enumerate(zip(analytic, numeric)):
        if a is None or n is None:
            continue
        np.testing.assert_allclose(
            a.numpy().astype(np.float64), n, rtol=rtol, atol=atol,
            err_msg=f"gradient of input {k} does not match finite differences",
        )
