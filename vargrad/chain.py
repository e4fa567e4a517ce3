"""
Helpers that invoke the reference operations through the graph.

Operations in :mod:`vargrad.functions` are not meant to be called directly
on variables that should be differentiated; these wrappers create a fresh
function instance per call and pass it through
:func:`~vargrad.function.apply_forward`.
"""
from vargrad.function import apply_forward
from vargrad.functions import LogSoftmax, NegativeLogLikelihood, ReLU, Sigmoid, Tanh
from vargrad.variable import Variable


def relu(x: Variable) -> Variable:
    """Rectified linear unit nonlinearity."""
    return apply_forward(ReLU(), x)


def sigmoid(x: Variable) -> Variable:
    """Sigmoid nonlinearity."""
    return apply_forward(Sigmoid(), x)


def tanh(x: Variable) -> Variable:
    """Tanh nonlinearity."""
    return apply_forward(Tanh(), x)


def cross_entropy(x: Variable, t: Variable, ignore_index: int = -100) -> Variable:
    """
    Cross-entropy loss: log-softmax followed by negative log-likelihood.

    Parameters
    ----------
    x : Variable
        Float logits of shape ``(N, C)``.
    t : Variable
        Integer class targets of shape ``(N,)``.
    ignore_index : int, default -100
        Target value excluded from the loss and from the average.

    Returns
    -------
    Variable
        Scalar loss averaged over non-ignored targets.

    Examples
    --------
    >>> x = variable([[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]], requires_grad=True)
    >>> t = variable([1, 0, -100])
    >>> loss = cross_entropy(x, t)
    >>> loss.backward()
    >>> x.grad_sliced().round(4)
    array([[ 0.2375, -0.2375],
           [-0.2625,  0.2625],
           [ 0.    ,  0.    ]], dtype=float32)
    """
    y = apply_forward(LogSoftmax(), x)
    return apply_forward(NegativeLogLikelihood(ignore_index=ignore_index), y, t)
