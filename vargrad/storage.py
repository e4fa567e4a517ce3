from typing import Any, Literal, Optional, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

from vargrad.errors import DeviceUnavailableError, ResourceExhaustedError

Device = Literal["cpu", "cuda"]
DEVICES = ("cpu", "cuda")


def is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    Safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)


def has_cuda() -> bool:
    """Return whether the accelerator backend can be used."""
    return _HAS_CUPY


def normalize_device(device: Optional[Union[str, Device]]) -> Optional[Device]:
    """
    Map a backend tag onto ``DEVICES``.

    Tags are case-insensitive and an ordinal suffix is dropped, so
    ``'cuda:1'`` becomes ``'cuda'``. None passes through so callers can
    fall back to inferring the backend from data.

    Raises
    ------
    ValueError
        For any other tag, e.g. ``'gpu'``.
    """
    if device is None:
        return None
    kind = device.split(":", 1)[0].lower() if isinstance(device, str) else None
    if kind not in DEVICES:
        raise ValueError(f"Unknown device spec: {device!r}")
    return kind



def get_array_module(device: Union[str, Device]) -> Any:
    """
    Return the array module backing ``device``.

    Raises
    ------
    DeviceUnavailableError
        If ``'cuda'`` is requested but CuPy is not installed/available.
    """
    dev = normalize_device(device)
    if dev == "cuda":
        if not _HAS_CUPY:
            raise DeviceUnavailableError(dev)
        return cp
    return np


def device_of(array: Any) -> Device:
    """Infer the backend tag of a NumPy or CuPy array."""
    return "cuda" if is_cupy_array(array) else "cpu"


class Storage:
    """
    A flat, contiguous buffer of homogeneous elements on one backend.

    The buffer is a 1-D NumPy array for ``'cpu'`` and a 1-D CuPy array for
    ``'cuda'``. A ``Storage`` object is the unit of sharing in the graph:
    a node and its type-erased projection hold the *same* ``Storage``
    object, so writes through one are visible through the other. Moving
    between backends is always an explicit copy (:meth:`transfer`).

    Parameters
    ----------
    buffer : numpy.ndarray or cupy.ndarray
        One-dimensional array holding the elements. It is not copied.

    Attributes
    ----------
    buffer : numpy.ndarray or cupy.ndarray
        The underlying flat array.
    device : {'cpu', 'cuda'}
        Backend the buffer lives on.
    """

    def __init__(self, buffer: Any) -> None:
        if buffer.ndim != 1:
            raise ValueError(f"Storage buffer must be 1-D, got ndim={buffer.ndim}")
        self.buffer = buffer
        self.device: Device = device_of(buffer)

    @classmethod
    def allocate(cls, n: int, dtype: Any = np.float32, device: Union[str, Device] = "cpu") -> "Storage":
        """
        Allocate a zero-initialized buffer of ``n`` elements on ``device``.

        Raises
        ------
        ResourceExhaustedError
            If the backend cannot satisfy the allocation.
        """
        xp = get_array_module(device)
        dtype = np.dtype(dtype)
        try:
            buffer = xp.zeros(int(n), dtype=dtype)
        except MemoryError as e:
            raise ResourceExhaustedError(int(n) * dtype.itemsize, normalize_device(device)) from e
        return cls(buffer)

    @classmethod
    def from_host(cls, array: Any, device: Union[str, Device] = "cpu", dtype: Any = None) -> "Storage":
        """
        Copy host (or device) data into a new buffer on ``device``.

        The input is flattened in C order. The result never aliases ``array``.
        """
        xp = get_array_module(device)
        if is_cupy_array(array) and xp is np:
            array = cp.asnumpy(array)
        try:
            buffer = xp.array(array, dtype=dtype, copy=True).reshape(-1)
        except MemoryError as e:
            nbytes = int(np.size(array)) * np.dtype(dtype or np.float32).itemsize
            raise ResourceExhaustedError(nbytes, normalize_device(device)) from e
        return cls(buffer)

    @property
    def dtype(self) -> np.dtype:
        """numpy.dtype: Element type of the buffer."""
        return self.buffer.dtype

    @property
    def nbytes(self) -> int:
        return int(self.buffer.nbytes)

    def __len__(self) -> int:
        return int(self.buffer.size)

    def xp(self) -> Any:
        """Return the array module (NumPy or CuPy) of this buffer."""
        return cp if self.device == "cuda" else np

    def to_host(self) -> np.ndarray:
        """Copy the buffer into host memory and return it as a NumPy array."""
        if self.device == "cuda":
            return cp.asnumpy(self.buffer)
        return self.buffer.copy()

    def zero_(self) -> "Storage":
        """Fill the buffer with zeros in place and return ``self``."""
        self.buffer.fill(0)
        return self

    def copy(self) -> "Storage":
        """Return a new storage on the same backend with copied elements."""
        return Storage.from_host(self.buffer, self.device)

    def transfer(self, device: Union[str, Device]) -> "Storage":
        """
        Copy this buffer onto ``device``.

        The copy is made even when ``device`` is the current backend, so the
        result never aliases ``self``.
        """
        dev = normalize_device(device)
        if dev == "cuda":
            return Storage.from_host(self.buffer, dev)
        return Storage(self.to_host())

    def __repr__(self) -> str:
        return f"Storage(n={len(self)}, dtype={self.dtype}, device='{self.device}')"


def transfer(storage: Storage, device: Union[str, Device]) -> Storage:
    """Copy ``storage`` to ``device``; see :meth:`Storage.transfer`."""
    return storage.transfer(device)
