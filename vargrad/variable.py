from math import prod
from typing import TYPE_CHECKING, Any, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from vargrad.errors import ShapeMismatchError, TypeMismatchError
from vargrad.storage import (
    Device,
    Storage,
    device_of,
    get_array_module,
    is_cupy_array,
    normalize_device,
)

if TYPE_CHECKING:
    from vargrad.backprop import BackProp


class VariableType(NamedTuple):
    """
    The static type of a typed node: element type, rank and backend.

    Two nodes with equal ``VariableType`` are interchangeable as far as an
    operation's signature is concerned. Re-typing an erased node checks the
    requested ``VariableType`` against the one recorded at erasure.
    """
    dtype: np.dtype
    ndim: int
    device: Device

    @classmethod
    def of(cls, dtype: Any, ndim: int, device: Union[str, Device] = "cpu") -> "VariableType":
        return cls(np.dtype(dtype), int(ndim), normalize_device(device))

    def __str__(self) -> str:
        return f"Variable[{self.dtype}, ndim={self.ndim}, device='{self.device}']"


def contiguous_strides(shape: Sequence[int]) -> Tuple[int, ...]:
    """Return C-order element strides for ``shape``."""
    strides = []
    step = 1
    for n in reversed(shape):
        strides.append(step)
        step *= max(int(n), 1)
    return tuple(reversed(strides))


def _check_layout(shape: Tuple[int, ...], strides: Tuple[int, ...], length: int) -> None:
    if len(shape) != len(strides):
        raise ShapeMismatchError(f"shape {shape} and strides {strides} have different ranks")
    if any(n < 0 for n in shape):
        raise ShapeMismatchError(f"negative extent in shape {shape}")
    if any(s < 0 for s in strides):
        raise ShapeMismatchError(f"negative strides are not supported: {strides}")
    if prod(shape) == 0:
        return
    extent = 1 + sum((n - 1) * s for n, s in zip(shape, strides))
    if length < max(extent, prod(shape)):
        raise ShapeMismatchError(
            f"storage of {length} elements is too small for shape {shape} with strides {strides}"
        )


class _StridedNode:
    """Accessors shared by typed and type-erased nodes over ``data``/``grad`` storage."""

    shape: Tuple[int, ...]
    strides: Tuple[int, ...]
    data: Storage
    grad: Optional[Storage]

    @property
    def ndim(self) -> int:
        """int: The node's rank."""
        return len(self.shape)

    @property
    def size(self) -> int:
        """int: Number of elements covered by the view."""
        return prod(self.shape)

    @property
    def device(self) -> Device:
        """{'cpu', 'cuda'}: Backend of the data storage."""
        return self.data.device

    def xp(self) -> Any:
        """Return the array backend (NumPy or CuPy)."""
        return self.data.xp()

    def _view(self, storage: Storage) -> Any:
        xp = storage.xp()
        itemsize = storage.dtype.itemsize
        return xp.lib.stride_tricks.as_strided(
            storage.buffer,
            shape=self.shape,
            strides=tuple(s * itemsize for s in self.strides),
        )

    def sliced(self) -> Any:
        """
        Return a strided array view over the data storage.

        The view aliases the storage: writing into it mutates every node
        that shares the buffer.
        """
        return self._view(self.data)

    def grad_sliced(self) -> Optional[Any]:
        """Return a strided view over the gradient storage, or None if absent."""
        if self.grad is None:
            return None
        return self._view(self.grad)

    def numpy(self) -> np.ndarray:
        """Copy the viewed data into a host NumPy array of ``self.shape``."""
        view = self.sliced()
        if self.device == "cuda":
            return self.xp().asnumpy(view)
        return np.array(view)


class Variable(_StridedNode):
    """
    A typed tensor node: a shaped, strided view over a storage buffer.

    The element type, rank and backend are fixed at construction (see
    :attr:`type`). A ``Variable`` is either a graph leaf (``grad_fn is None``)
    or the output of an operation invoked through
    :func:`vargrad.function.apply_forward`, in which case ``grad_fn`` is the
    backward-edge record that produced it and ``out_position`` is its index
    among that operation's outputs.

    Parameters
    ----------
    requires_grad : bool
        If True, a zero-filled gradient storage with the same element count
        and backend as ``data`` is allocated.
    shape : sequence of int
        Per-axis extents.
    strides : sequence of int
        Per-axis steps, in elements, into ``data``.
    data : Storage
        Buffer to wrap. It is shared, not copied.

    Attributes
    ----------
    data : Storage
        Data buffer, shared with erased projections and views.
    grad : Storage or None
        Gradient buffer. Present if and only if ``requires_grad`` is True.
    grad_fn : BackProp or None
        The record that produced this node.
    out_position : int
        Output slot of ``grad_fn`` this node corresponds to.

    Raises
    ------
    ShapeMismatchError
        If ``shape`` and ``strides`` differ in length or ``data`` is too small.
    """

    def __init__(
        self,
        requires_grad: bool,
        shape: Sequence[int],
        strides: Sequence[int],
        data: Storage,
    ) -> None:
        shape = tuple(int(n) for n in shape)
        strides = tuple(int(s) for s in strides)
        _check_layout(shape, strides, len(data))
        self.shape = shape
        self.strides = strides
        self.data = data
        self.grad: Optional[Storage] = None
        self.grad_fn: Optional["BackProp"] = None
        self.out_position = 0
        self._requires_grad = False
        self.requires_grad = requires_grad

    @classmethod
    def _from_storages(
        cls,
        requires_grad: bool,
        shape: Sequence[int],
        strides: Sequence[int],
        data: Storage,
        grad: Optional[Storage],
    ) -> "Variable":
        v = cls(False, shape, strides, data)
        if grad is not None:
            if len(grad) != len(data):
                raise ShapeMismatchError(
                    f"gradient storage of {len(grad)} elements does not match data of {len(data)}"
                )
            v.grad = grad
        v._requires_grad = bool(requires_grad)
        if not v._requires_grad:
            v.grad = None
        elif v.grad is None:
            v.grad = Storage.allocate(len(data), data.dtype, data.device)
        return v

    @property
    def requires_grad(self) -> bool:
        """bool: Whether this node owns a gradient buffer and accumulates into it."""
        return self._requires_grad

    @requires_grad.setter
    def requires_grad(self, value: bool) -> None:
        self._requires_grad = bool(value)
        if self._requires_grad and self.grad is None:
            self.grad = Storage.allocate(len(self.data), self.data.dtype, self.data.device)
        elif not self._requires_grad:
            self.grad = None

    @property
    def dtype(self) -> np.dtype:
        """numpy.dtype: The element type."""
        return self.data.dtype

    @property
    def type(self) -> VariableType:
        """VariableType: ``(dtype, ndim, device)`` of this node."""
        return VariableType(self.dtype, self.ndim, self.device)

    @property
    def is_leaf(self) -> bool:
        return self.grad_fn is None

    def dup(self) -> "Variable":
        """
        Return a detached copy with a freshly copied data buffer.

        Shape, strides and ``requires_grad`` are preserved; the producing
        record is not, so the copy is a leaf.
        """
        return Variable(self.requires_grad, self.shape, self.strides, self.data.copy())

    def to(self, device: Union[str, Device]) -> "Variable":
        """
        Return a copy of this node on ``device``.

        The data is copied explicitly. The gradient is not transferred: when
        ``requires_grad`` is set the copy starts with its own zeroed gradient
        on the target backend.

        Examples
        --------
        >>> x = variable([[1, 2], [3, 4]])
        >>> xd = x.to("cuda")   # requires CuPy
        >>> xd.to("cpu").numpy()
        array([[1., 2.],
               [3., 4.]], dtype=float32)
        """
        return Variable(self.requires_grad, self.shape, self.strides, self.data.transfer(device))

    def untyped(self) -> "UntypedVariable":
        """Erase this node's static type; the result shares both storages."""
        return UntypedVariable.from_variable(self)

    def backward(self, grad: Optional[Any] = None, position: Optional[int] = None) -> None:
        """
        Backpropagate from this node through its producing record.

        Parameters
        ----------
        grad : Variable, UntypedVariable, array-like, or None
            Gradient of the loss with respect to this node. ``None`` treats
            this node as the loss and uses an implicit unit gradient, which
            is only allowed when the producing operation has one output.
            Array-like values are placed on this node's device and dtype.
        position : int, optional
            Output slot to deliver into. Defaults to ``self.out_position``.

        Notes
        -----
        - Leaves (``grad_fn is None``) are left untouched; this is a no-op.
        - Gradients are accumulated into ``grad`` of every input reached that
          has ``requires_grad=True``.
        """
        if self.grad_fn is None:
            return
        pos = self.out_position if position is None else position
        self.grad_fn.backward(None if grad is None else self._as_untyped(grad), pos)

    def _as_untyped(self, grad: Any) -> "UntypedVariable":
        if isinstance(grad, UntypedVariable):
            return grad
        if isinstance(grad, Variable):
            return grad.untyped()
        return variable(grad, device=self.device, dtype=self.dtype).untyped()

    def zero_grad(self) -> None:
        """Reset the gradient buffer to zero in place."""
        if self.grad is not None:
            self.grad.zero_()

    def __repr__(self) -> str:
        """
        Return a readable representation with data, dtype, device and grad flag.

        Examples
        --------
        >>> variable([[1, 2], [3, 4]], requires_grad=True)
        variable([[1., 2.],
                  [3., 4.]], dtype=float32, requires_grad=True, device='cpu')
        """
        data_str = np.array2string(self.numpy(), separator=', ', prefix='variable(')
        details = [f"dtype={self.dtype}, requires_grad={self.requires_grad}", f"device='{self.device}'"]
        if self.grad_fn is not None:
            details.append(f"grad_fn={self.grad_fn.name}")
        return f"variable({data_str}, {', '.join(details)})"


class UntypedVariable(_StridedNode):
    """
    A type-erased tensor node: the payload of graph edges.

    A backward-edge record holds inputs of arbitrary dtype, rank and backend,
    which a single homogeneous typed container cannot express. Erasure keeps
    the shape and strides, records ``dtype``/``ndim``/``device`` as runtime
    tags, and shares the very same ``data`` and ``grad`` storage objects as
    the typed node. :meth:`to` reverses it after checking the tags.
    """

    def __init__(
        self,
        requires_grad: bool,
        shape: Sequence[int],
        strides: Sequence[int],
        dtype: Any,
        data: Storage,
        grad: Optional[Storage] = None,
        out_position: int = 0,
        grad_fn: Optional["BackProp"] = None,
    ) -> None:
        self.requires_grad = bool(requires_grad)
        self.shape = tuple(shape)
        self.strides = tuple(strides)
        self.dtype = np.dtype(dtype)
        self.data = data
        self.grad = grad
        self.out_position = out_position
        self.grad_fn = grad_fn

    @classmethod
    def from_variable(cls, v: Variable) -> "UntypedVariable":
        return cls(
            v.requires_grad,
            v.shape,
            v.strides,
            v.dtype,
            v.data,
            grad=v.grad,
            out_position=v.out_position,
            grad_fn=v.grad_fn,
        )

    @property
    def type(self) -> VariableType:
        """VariableType: The tags recorded at erasure."""
        return VariableType(self.dtype, self.ndim, self.device)

    def to(self, vtype: VariableType) -> Variable:
        """
        Re-type this node as a :class:`Variable` of ``vtype``.

        Raises
        ------
        TypeMismatchError
            If ``vtype`` differs from the recorded dtype, rank or backend.
            Memory is never reinterpreted.
        """
        vtype = VariableType.of(*vtype)
        if vtype != self.type:
            raise TypeMismatchError(vtype, self.type)
        v = Variable._from_storages(self.requires_grad, self.shape, self.strides, self.data, self.grad)
        v.grad_fn = self.grad_fn
        v.out_position = self.out_position
        if self.grad is None and v.grad is not None:
            self.grad = v.grad
        return v

    def typed(self) -> Variable:
        """Re-type this node with its own recorded tags."""
        return self.to(self.type)

    def backward(self, grad: Optional["UntypedVariable"] = None) -> None:
        """Deliver ``grad`` into the producing record at ``out_position``; no-op for leaves."""
        if self.grad_fn is not None:
            self.grad_fn.backward(grad, self.out_position)

    def __repr__(self) -> str:
        return (
            f"UntypedVariable({self.dtype}, ndim={self.ndim}, shape={self.shape}, "
            f"device='{self.device}', out_position={self.out_position})"
        )


def variable(
    data: Any,
    requires_grad: bool = False,
    device: Optional[str] = None,
    dtype: Any = None,
) -> Variable:
    """
    Create a leaf :class:`Variable` from array-like data.

    Parameters
    ----------
    data : Any
        Python lists/tuples, ``numpy.ndarray`` or ``cupy.ndarray``. The data
        is always copied into a fresh contiguous storage.
    requires_grad : bool, default False
        Allocate a gradient buffer and accumulate gradients into it.
    device : {'cpu', 'cuda', 'cuda:0', ...} or None, optional
        Target backend. If None, inferred from ``data`` (CuPy → 'cuda',
        otherwise 'cpu').
    dtype : dtype-like, optional
        Element type. Defaults to ``float32`` for floating input and to the
        input's own dtype otherwise (e.g. integer class labels).

    Examples
    --------
    >>> x = variable([[0.1, 0.2], [0.3, 0.4]], requires_grad=True)
    >>> x.type
    VariableType(dtype=dtype('float32'), ndim=2, device='cpu')
    >>> t = variable([1, 0, -100])
    >>> t.dtype.kind
    'i'
    """
    dev = normalize_device(device) or device_of(data)
    get_array_module(dev)
    arr = data if is_cupy_array(data) else np.asarray(data)
    if dtype is None:
        dtype = np.float32 if arr.dtype.kind == "f" else arr.dtype
    storage = Storage.from_host(arr, dev, dtype)
    return Variable(requires_grad, arr.shape, contiguous_strides(arr.shape), storage)


def as_variable(array: Any, requires_grad: bool = False) -> Variable:
    """
    Wrap a NumPy or CuPy array as a leaf :class:`Variable`.

    Unlike :func:`variable`, the array is not copied when it is already
    C-contiguous, and its dtype is kept as is. Operations use this to hand
    their results back to the graph.
    """
    xp = get_array_module(device_of(array))
    shape = tuple(array.shape)
    buffer = xp.ascontiguousarray(array).reshape(-1)
    return Variable(requires_grad, shape, contiguous_strides(shape), Storage(buffer))
