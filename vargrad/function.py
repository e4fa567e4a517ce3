"""
Operation interface and the graph-construction protocol.

An operation is a :class:`Function` subclass implementing ``forward`` over
typed :class:`~vargrad.variable.Variable` nodes and the matching
``backward``. Operations are lifted into the graph with
:func:`apply_forward`, which runs ``forward`` and, when gradient tracking is
on, records one :class:`~vargrad.backprop.BackProp` linking the erased
inputs to the outputs.

Like PyTorch's ``autograd.Function`` the pair is written once per
operation, but here each invocation uses its own instance: whatever
``forward`` needs to keep for ``backward`` is stored on ``self``.
"""
import logging
from abc import ABC, abstractmethod
from math import prod
from typing import List, Optional, Tuple, Union

from vargrad.backprop import BackProp, SlotPolicy
from vargrad.errors import ContractViolationError, ShapeMismatchError, TypeMismatchError
from vargrad.grad_mode import resolve_grad_enabled
from vargrad.storage import Storage, get_array_module
from vargrad.variable import UntypedVariable, Variable, VariableType, contiguous_strides

logger = logging.getLogger(__name__)

Outputs = Union[Variable, Tuple[Variable, ...]]
Gradients = Union[Optional[Variable], Tuple[Optional[Variable], ...]]


class Function(ABC):
    """
    Abstract base class for differentiable operations.

    Subclasses implement ``forward`` and ``backward``. The arities mirror
    each other: ``backward`` receives one gradient per output of
    ``forward`` and returns one gradient per input (``None`` for inputs that
    are not differentiable, e.g. integer class labels).

    Attributes
    ----------
    slot_policy : SlotPolicy
        Policy of the records created for this operation; see
        :class:`~vargrad.backprop.SlotPolicy`.

    Notes
    -----
    - Store arrays (e.g. ``x.sliced()``), not the ``Variable`` objects
      themselves, for use in ``backward``. An output kept on the function
      would reference the record that references the function.
    - Outputs should be created with ``requires_grad=False``;
      :func:`apply_forward` flips the flag only when the call is tracked.
    """

    slot_policy: SlotPolicy = SlotPolicy.ACCUMULATE

    @abstractmethod
    def forward(self, *inputs: Variable) -> Outputs:
        """
        Compute the output node(s) from the input nodes.

        Returns
        -------
        Variable or tuple of Variable
        """
        ...

    @abstractmethod
    def backward(self, *grad_outputs: Variable) -> Gradients:
        """
        Compute gradients with respect to the inputs of ``forward``.

        Parameters
        ----------
        *grad_outputs : Variable
            Gradient of the loss with respect to each output, in order.

        Returns
        -------
        Variable, None, or tuple of (Variable or None)
            One entry per input of ``forward``.
        """
        ...

    def apply_forward(self, *inputs: Variable, grad_enabled: Optional[bool] = None) -> Outputs:
        """Run this function through :func:`apply_forward`."""
        return apply_forward(self, *inputs, grad_enabled=grad_enabled)


def _unit_gradient(vtype: VariableType, shape: Tuple[int, ...]) -> Variable:
    xp = get_array_module(vtype.device)
    data = Storage(xp.ones(prod(shape), dtype=vtype.dtype))
    return Variable(False, shape, contiguous_strides(shape), data)


def _as_tuple(values) -> tuple:
    if values is None or isinstance(values, Variable):
        return (values,)
    return tuple(values)


def apply_forward(
    func: Function,
    *inputs: Variable,
    grad_enabled: Optional[bool] = None,
) -> Outputs:
    """
    Invoke ``func`` and record it into the computation graph.

    Parameters
    ----------
    func : Function
        A fresh operation instance.
    *inputs : Variable
        Typed input nodes.
    grad_enabled : bool, optional
        Explicit tracking mode for this call. Defaults to the scoped value
        managed by :class:`~vargrad.grad_mode.no_grad` /
        :func:`~vargrad.grad_mode.set_grad_enabled`.

    Returns
    -------
    Variable or tuple of Variable
        Whatever ``func.forward`` returned. When tracked, every output has
        ``requires_grad=True``, ``grad_fn`` set to the new record and
        ``out_position`` set to its index.

    Notes
    -----
    When tracking is off, or no input requires gradients, the result of
    ``forward`` is returned with no graph side effects: no record is
    created and no gradient storage is allocated.

    Examples
    --------
    >>> x = variable([-1.0, 2.0, 3.0], requires_grad=True)
    >>> y = apply_forward(ReLU(), x)
    >>> y.backward([1.0, 2.0, 3.0])
    >>> x.grad_sliced()
    array([0., 2., 3.], dtype=float32)
    """
    for i, x in enumerate(inputs):
        if not isinstance(x, Variable):
            raise TypeError(f"input {i} of {type(func).__name__} is {type(x).__name__}, expected Variable")

    # snapshot grad_fn and out_position before forward runs
    uinputs = [x.untyped() for x in inputs]
    outputs = func.forward(*inputs)
    outs = _as_tuple(outputs)

    if not resolve_grad_enabled(grad_enabled) or not any(u.requires_grad for u in uinputs):
        return outputs

    name = type(func).__name__
    out_meta = [(o.type, o.shape) for o in outs]

    def proc(
        grad_outputs: List[Optional[UntypedVariable]],
        stored: List[UntypedVariable],
    ) -> List[Optional[UntypedVariable]]:
        gys = []
        for g, (vtype, shape) in zip(grad_outputs, out_meta):
            if g is None:
                gys.append(_unit_gradient(vtype, shape))
                continue
            if g.shape != shape:
                raise ShapeMismatchError(f"{name}: gradient of shape {g.shape} for output of shape {shape}")
            gys.append(g.to(vtype))

        gxs = _as_tuple(func.backward(*gys))
        if len(gxs) != len(stored):
            raise ContractViolationError(
                f"{name}.backward returned {len(gxs)} gradients for {len(stored)} inputs"
            )

        result: List[Optional[UntypedVariable]] = []
        for gx, u in zip(gxs, stored):
            if gx is None or not u.requires_grad:
                result.append(None)
                continue
            if gx.type != u.type:
                raise TypeMismatchError(u.type, gx.type)
            if gx.shape != u.shape:
                raise ShapeMismatchError(f"{name}: gradient of shape {gx.shape} for input of shape {u.shape}")
            if u.grad is not None:
                view = u.grad_sliced()
                view += gx.sliced()
            result.append(gx.untyped())
        return result

    record = BackProp(proc, uinputs, n_outputs=len(outs), policy=func.slot_policy, name=name)
    for i, o in enumerate(outs):
        o.requires_grad = True
        o.grad_fn = record
        o.out_position = i
    logger.debug("recorded %s with %d inputs and %d outputs", name, len(uinputs), len(outs))
    return outputs
