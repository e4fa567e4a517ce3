"""
Backward-edge records: the edges of the computation graph.

One :class:`BackProp` is created per operation invocation under gradient
tracking. It keeps the operation's backward procedure, the type-erased
inputs captured at invocation time and one gradient slot per output of the
operation. Gradients arriving from downstream fill the slots; once every
slot is filled the record *fires*: its procedure maps the slot gradients to
one gradient per input, and each of those is delivered to the record that
produced the corresponding input.

Traversal is iterative. A ``backward`` call first walks the records
reachable from the root and counts how many deliveries each one will get
in this pass, refusing the pass if any of them has already fired, then
pushes gradients through an explicit work-list. A record fires only when
all of those deliveries have arrived and all of its slots are filled, so
a node consumed twice in one graph fires its producer once, with the
summed gradient.
"""
import enum
import logging
from typing import Callable, Dict, List, Optional, Sequence

from vargrad.errors import ContractViolationError, ShapeMismatchError, TypeMismatchError
from vargrad.storage import Storage
from vargrad.variable import UntypedVariable, contiguous_strides

logger = logging.getLogger(__name__)

Proc = Callable[
    [List[Optional[UntypedVariable]], List[UntypedVariable]],
    Sequence[Optional[UntypedVariable]],
]


class BackPropState(enum.Enum):
    PENDING = "pending"
    ACCUMULATING = "accumulating"
    FIRED = "fired"


class SlotPolicy(enum.Enum):
    """
    What happens when a gradient slot receives a second gradient.

    ``ACCUMULATE`` sums the contributions, which is what a node with several
    consumers in one graph needs. ``OVERWRITE`` keeps only the most recent
    one.
    """
    ACCUMULATE = "accumulate"
    OVERWRITE = "overwrite"


def _add_gradients(a: UntypedVariable, b: UntypedVariable) -> UntypedVariable:
    if a.type != b.type:
        raise TypeMismatchError(a.type, b.type)
    if a.shape != b.shape:
        raise ShapeMismatchError(f"cannot sum gradients of shapes {a.shape} and {b.shape}")
    total = a.sliced() + b.sliced()
    buffer = a.xp().ascontiguousarray(total).reshape(-1)
    return UntypedVariable(False, a.shape, contiguous_strides(a.shape), a.dtype, Storage(buffer))


class BackProp:
    """
    The backward-edge record of one operation invocation.

    Parameters
    ----------
    proc : callable
        ``proc(grad_outputs, inputs) -> gradients``. Receives the ordered
        slot gradients (``None`` in a slot means the implicit unit gradient
        of the loss case) and the stored inputs, returns one gradient (or
        None) per input.
    inputs : sequence of UntypedVariable
        The operation's arguments, erased at invocation time.
    n_outputs : int, default 1
        Number of outputs of the operation, i.e. gradient slots.
    policy : SlotPolicy, default SlotPolicy.ACCUMULATE
        How repeated deliveries into the same slot combine.
    name : str, optional
        Label used in logs and reprs.

    Notes
    -----
    - The record never references the nodes it produced; those nodes hold
      the record through ``grad_fn``. The graph is therefore a DAG of shared
      references without back-pointers.
    - A record fires at most once. :meth:`reset` clears it so the graph can
      be replayed.
    """

    def __init__(
        self,
        proc: Proc,
        inputs: Sequence[UntypedVariable],
        n_outputs: int = 1,
        policy: SlotPolicy = SlotPolicy.ACCUMULATE,
        name: Optional[str] = None,
    ) -> None:
        if n_outputs < 1:
            raise ContractViolationError(f"a record needs at least one output slot, got {n_outputs}")
        self.proc = proc
        self.inputs: List[UntypedVariable] = list(inputs)
        self.grad_outputs: List[Optional[UntypedVariable]] = [None] * n_outputs
        self.n_grad = 0
        self.policy = SlotPolicy(policy)
        self.name = name or getattr(proc, "__name__", type(self).__name__)
        self._filled = [False] * n_outputs
        self._fired = False

    @property
    def expected(self) -> int:
        """int: Number of gradient slots that must be filled before firing."""
        return len(self.grad_outputs)

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def state(self) -> BackPropState:
        if self._fired:
            return BackPropState.FIRED
        if self.n_grad > 0:
            return BackPropState.ACCUMULATING
        return BackPropState.PENDING

    def reset(self) -> None:
        """Return the record to ``PENDING``, dropping every slot gradient."""
        self.grad_outputs = [None] * self.expected
        self._filled = [False] * self.expected
        self.n_grad = 0
        self._fired = False

    def backward(self, grad: Optional[UntypedVariable] = None, position: int = 0) -> None:
        """
        Deliver a gradient into slot ``position`` and run every record that
        becomes ready as a consequence.

        Parameters
        ----------
        grad : UntypedVariable or None
            Gradient with respect to output ``position``. ``None`` declares
            this record's single output to be the loss: the record fires
            immediately with the implicit unit gradient, replacing anything
            already in the slot.
        position : int, default 0
            Output slot the gradient belongs to.

        Raises
        ------
        ContractViolationError
            If the record captured no inputs, if ``grad`` is None while more
            than one slot is expected, if ``position`` is out of range, or if
            this record (or one reached from it) has already fired.
        """
        if not self.inputs:
            raise ContractViolationError(f"nothing to backprop: {self.name} recorded no inputs")
        if grad is None and self.expected != 1:
            raise ContractViolationError(
                f"this variable is not a loss: {self.name} expects {self.expected} gradients"
            )
        if self._fired:
            raise self._consumed()
        pending = self._count_pending()
        if grad is None:
            self._check_slot(position)
            self.grad_outputs[position] = None
            if not self._filled[position]:
                self._filled[position] = True
                self.n_grad += 1
            ready = [self]
        else:
            self._store(grad, position)
            ready = [self] if self._is_ready(pending) else []
        self._run(ready, pending)

    def _count_pending(self) -> Dict["BackProp", int]:
        pending: Dict[BackProp, int] = {}
        seen = {self}
        stack = [self]
        while stack:
            record = stack.pop()
            for inp in record.inputs:
                upstream = inp.grad_fn
                if upstream is None or not inp.requires_grad:
                    continue
                if upstream._fired:
                    raise upstream._consumed()
                pending[upstream] = pending.get(upstream, 0) + 1
                if upstream not in seen:
                    seen.add(upstream)
                    stack.append(upstream)
        return pending

    def _run(self, ready: List["BackProp"], pending: Dict["BackProp", int]) -> None:
        while ready:
            record = ready.pop()
            grads = record._fire()
            for inp, g in zip(record.inputs, grads):
                upstream = inp.grad_fn
                if upstream is None or not inp.requires_grad:
                    continue
                pending[upstream] -= 1
                if g is not None:
                    upstream._store(g, inp.out_position)
                if upstream._is_ready(pending):
                    ready.append(upstream)

    def _check_slot(self, position: int) -> None:
        if not 0 <= position < self.expected:
            raise ContractViolationError(
                f"gradient slot {position} out of range for {self.name} with {self.expected} outputs"
            )

    def _store(self, grad: UntypedVariable, position: int) -> None:
        if self._fired:
            raise self._consumed()
        self._check_slot(position)
        current = self.grad_outputs[position]
        if self._filled[position] and current is not None and self.policy is SlotPolicy.ACCUMULATE:
            self.grad_outputs[position] = _add_gradients(current, grad)
        else:
            self.grad_outputs[position] = grad
        if not self._filled[position]:
            self._filled[position] = True
            self.n_grad += 1
        logger.debug("%s: slot %d filled (%d/%d)", self.name, position, self.n_grad, self.expected)

    def _consumed(self) -> ContractViolationError:
        return ContractViolationError(
            f"{self.name} has already fired; call reset() before backpropagating through it again"
        )

    def _is_ready(self, pending: Dict["BackProp", int]) -> bool:
        return not self._fired and self.n_grad == self.expected and pending.get(self, 0) == 0

    def _fire(self) -> List[Optional[UntypedVariable]]:
        if not self.inputs:
            raise ContractViolationError(f"nothing to backprop: {self.name} recorded no inputs")
        if self._fired:
            raise self._consumed()
        self._fired = True
        logger.debug("%s: firing with %d inputs", self.name, len(self.inputs))
        grads = list(self.proc(list(self.grad_outputs), self.inputs))
        if len(grads) != len(self.inputs):
            raise ContractViolationError(
                f"{self.name} returned {len(grads)} gradients for {len(self.inputs)} inputs"
            )
        return grads

    def __repr__(self) -> str:
        return f"BackProp({self.name}, inputs={len(self.inputs)}, filled={self.n_grad}/{self.expected}, state={self.state.value})"
