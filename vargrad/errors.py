"""
Exceptions raised by the vargrad graph machinery.

Every error derives from :class:`VargradError` and from the closest builtin
exception, so callers may catch either the library-specific class or the
builtin one (e.g. ``MemoryError`` for allocation failures).
"""


class VargradError(Exception):
    """Base class for all vargrad errors."""


class ContractViolationError(VargradError, RuntimeError):
    """
    Raised when the graph API is misused by an operation or a caller.

    Examples are firing a backward-edge record that captured no inputs,
    calling the no-argument ``backward`` on a record expecting more than one
    gradient, or delivering a gradient into a record that already fired.
    These are programming errors and are not meant to be recovered from.
    """


class ResourceExhaustedError(VargradError, MemoryError):
    """
    Raised when a storage buffer cannot be allocated.

    Attributes
    ----------
    nbytes : int
        Size of the failed request in bytes.
    device : str
        Backend on which the allocation was attempted.
    """

    def __init__(self, nbytes: int, device: str) -> None:
        super().__init__(f"failed to allocate {nbytes} bytes on '{device}'.")
        self.nbytes = nbytes
        self.device = device


class TypeMismatchError(VargradError, TypeError):
    """
    Raised when a type-erased node is re-typed with the wrong element type,
    rank or backend.

    Attributes
    ----------
    expected : object
        The type that was requested.
    actual : object
        The type recorded on the erased node.
    """

    def __init__(self, expected: object, actual: object) -> None:
        super().__init__(f"Type mismatch: requested {expected}, but node holds {actual}.")
        self.expected = expected
        self.actual = actual


class ShapeMismatchError(VargradError, ValueError):
    """Raised when shapes, strides and storage sizes disagree."""


class DeviceUnavailableError(VargradError, RuntimeError):
    """
    Raised when a backend is requested whose array library is not installed.

    Attributes
    ----------
    device : str
        The requested backend tag.
    """

    def __init__(self, device: str) -> None:
        super().__init__(f"'{device}' requested but CuPy is not installed/available.")
        self.device = device
