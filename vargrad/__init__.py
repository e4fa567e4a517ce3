from vargrad.backprop import BackProp, BackPropState, SlotPolicy
from vargrad.errors import (
    ContractViolationError,
    DeviceUnavailableError,
    ResourceExhaustedError,
    ShapeMismatchError,
    TypeMismatchError,
    VargradError,
)
from vargrad.function import Function, apply_forward
from vargrad.grad_mode import enable_grad, is_grad_enabled, no_grad, set_grad_enabled
from vargrad.storage import Storage, has_cuda, transfer
from vargrad.variable import UntypedVariable, Variable, VariableType, as_variable, variable

__version__ = "0.1.0"
