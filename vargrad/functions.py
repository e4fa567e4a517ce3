"""
Reference operations written against the :class:`~vargrad.function.Function`
contract.

Every operation is device-agnostic: it computes with the array module of
its inputs (``numpy`` for 'cpu', ``cupy`` for 'cuda'), so the same code runs
on both backends. Results are handed back with
:func:`~vargrad.variable.as_variable` and never require gradients by
themselves; graph bookkeeping is left to
:func:`~vargrad.function.apply_forward`.
"""
from typing import Optional, Tuple

from vargrad.errors import ShapeMismatchError
from vargrad.function import Function
from vargrad.variable import Variable, as_variable


class ReLU(Function):
    """
    Rectified linear unit, ``y = max(x, 0)``.

    Notes
    -----
    The gradient at ``x == 0`` is 0, like PyTorch.

    Examples
    --------
    >>> x = variable([-1.0, 1.0, 0.0])
    >>> ReLU().forward(x).numpy()
    array([0., 1., 0.], dtype=float32)
    """

    def forward(self, x: Variable) -> Variable:
        xs = x.sliced()
        self._mask = xs > 0
        return as_variable(xs * self._mask)

    def backward(self, gy: Variable) -> Variable:
        return as_variable(gy.sliced() * self._mask)


class Sigmoid(Function):
    """Logistic sigmoid, computed as ``tanh(x / 2) / 2 + 1 / 2`` for stability."""

    def forward(self, x: Variable) -> Variable:
        xp = x.xp()
        xs = x.sliced()
        half = xs.dtype.type(0.5)
        self._y = xp.tanh(xs * half) * half + half
        return as_variable(self._y)

    def backward(self, gy: Variable) -> Variable:
        y = self._y
        return as_variable(gy.sliced() * y * (1 - y))


class Tanh(Function):
    """Hyperbolic tangent."""

    def forward(self, x: Variable) -> Variable:
        self._y = x.xp().tanh(x.sliced())
        return as_variable(self._y)

    def backward(self, gy: Variable) -> Variable:
        y = self._y
        return as_variable(gy.sliced() * (1 - y * y))


class Neg(Function):
    """``y = -x``"""

    def forward(self, x: Variable) -> Variable:
        return as_variable(-x.sliced())

    def backward(self, gy: Variable) -> Variable:
        return as_variable(-gy.sliced())


class Scale(Function):
    """
    ``y = alpha * x``

    Parameters
    ----------
    alpha : float, default 1.0
        Scale factor, cast to the input's dtype.
    """

    def __init__(self, alpha: float = 1.0) -> None:
        self.alpha = alpha

    def forward(self, x: Variable) -> Variable:
        xs = x.sliced()
        return as_variable(xs.dtype.type(self.alpha) * xs)

    def backward(self, gy: Variable) -> Variable:
        gs = gy.sliced()
        return as_variable(gs.dtype.type(self.alpha) * gs)


class Reciprocal(Function):
    """``y = 1 / x``, with ``dy/dx = -y ** 2``."""

    def forward(self, x: Variable) -> Variable:
        xs = x.sliced()
        self._y = xs.dtype.type(1) / xs
        return as_variable(self._y)

    def backward(self, gy: Variable) -> Variable:
        return as_variable(-gy.sliced() * self._y * self._y)


class LogSoftmax(Function):
    """
    Log-softmax over the last axis.

    ``y = x - logsumexp(x)``, computed after subtracting the row maximum so
    that large inputs do not overflow. The gradient is
    ``gx = gy - exp(y) * sum(gy)`` along the same axis.

    Examples
    --------
    >>> x = variable([[-1.0, 2.0, 3.0]])
    >>> LogSoftmax().forward(x).numpy().round(4)
    array([[-4.3266, -1.3266, -0.3266]], dtype=float32)
    """

    def forward(self, x: Variable) -> Variable:
        xp = x.xp()
        xs = x.sliced()
        m = xs.max(axis=-1, keepdims=True)
        shifted = xs - m
        self._y = shifted - xp.log(xp.exp(shifted).sum(axis=-1, keepdims=True))
        return as_variable(self._y)

    def backward(self, gy: Variable) -> Variable:
        xp = gy.xp()
        gs = gy.sliced()
        return as_variable(gs - xp.exp(self._y) * gs.sum(axis=-1, keepdims=True))


class NegativeLogLikelihood(Function):
    """
    Negative log-likelihood of class targets given log-probabilities.

    Inputs are a float node of shape ``(N, C)`` holding log-probabilities and
    an integer node of shape ``(N,)`` holding class indices. The output is a
    scalar (shape ``()``).

    Parameters
    ----------
    ignore_index : int, default -100
        Targets equal to this value contribute neither to the loss nor to
        the count used for averaging.
    size_average : bool, default True
        Divide by the number of non-ignored targets; otherwise sum.

    Notes
    -----
    If every target is ignored the divisor is clamped to 1, so the loss and
    its gradient are zero rather than NaN.
    """

    def __init__(self, ignore_index: int = -100, size_average: bool = True) -> None:
        self.ignore_index = ignore_index
        self.size_average = size_average

    def forward(self, logp: Variable, target: Variable) -> Variable:
        if logp.ndim != 2 or target.ndim != 1 or logp.shape[0] != target.shape[0]:
            raise ShapeMismatchError(
                f"expected (N, C) log-probabilities and (N,) targets, got {logp.shape} and {target.shape}"
            )
        xp = logp.xp()
        ls = logp.sliced()
        ts = target.sliced()
        valid = ts != self.ignore_index
        rows = xp.arange(ls.shape[0])[valid]
        cols = ts[valid].astype(xp.int64)
        self._rows, self._cols = rows, cols
        self._shape = logp.shape
        self._scale = 1.0 / max(int(valid.sum()), 1) if self.size_average else 1.0
        loss = -ls[rows, cols].sum() * ls.dtype.type(self._scale)
        return as_variable(xp.asarray(loss, dtype=ls.dtype))

    def backward(self, gy: Variable) -> Tuple[Variable, Optional[Variable]]:
        xp = gy.xp()
        gs = gy.sliced()
        gx = xp.zeros(self._shape, dtype=gs.dtype)
        gx[self._rows, self._cols] = -gs * gs.dtype.type(self._scale)
        return as_variable(gx), None


class MatMul(Function):
    """Matrix product of two rank-2 nodes, ``y = a @ b``."""

    def forward(self, a: Variable, b: Variable) -> Variable:
        if a.ndim != 2 or b.ndim != 2 or a.shape[1] != b.shape[0]:
            raise ShapeMismatchError(f"cannot multiply shapes {a.shape} and {b.shape}")
        xp = a.xp()
        self._a = a.sliced()
        self._b = b.sliced()
        return as_variable(xp.matmul(self._a, self._b))

    def backward(self, gy: Variable) -> Tuple[Variable, Variable]:
        xp = gy.xp()
        gs = gy.sliced()
        return as_variable(xp.matmul(gs, self._b.T)), as_variable(xp.matmul(self._a.T, gs))


class AddBias(Function):
    """Add a rank-1 bias to every row of a rank-2 node, ``y = x + b``."""

    def forward(self, x: Variable, b: Variable) -> Variable:
        if x.ndim != 2 or b.ndim != 1 or x.shape[1] != b.shape[0]:
            raise ShapeMismatchError(f"cannot add bias of shape {b.shape} to {x.shape}")
        return as_variable(x.sliced() + b.sliced())

    def backward(self, gy: Variable) -> Tuple[Variable, Variable]:
        gs = gy.sliced()
        return as_variable(gs.copy()), as_variable(gs.sum(axis=0))
