import numpy as np
import torch

from vargrad import BackProp, Variable, variable

ATOL = 1e-6
RTOL = 1e-5


def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")


def to_numpy(x):
    if isinstance(x, Variable):
        return x.numpy()
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)


def vgrad(v: Variable):
    g = v.grad_sliced()
    return None if g is None else to_numpy(g)


def make_variable(x_np: np.ndarray, requires_grad: bool = True, device: str = "cpu", dtype=np.float32) -> Variable:
    return variable(np.asarray(x_np, dtype=dtype), requires_grad=requires_grad, device=device)


def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)


def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"


def assert_grad_close(v: Variable, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert v.grad is not None, "Variable.grad is None"
    assert tt.grad is not None, "Torch grad is None"
    assert_close(vgrad(v), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)


def spy_record(n_inputs: int = 1, n_outputs: int = 1, **kwargs):
    """Build a BackProp whose procedure only records the gradients it was fired with."""
    calls = []

    def proc(grad_outputs, inputs):
        calls.append(list(grad_outputs))
        return [None] * len(inputs)

    inputs = [variable([1.0, 2.0]).untyped() for _ in range(n_inputs)]
    return BackProp(proc, inputs, n_outputs=n_outputs, **kwargs), calls
