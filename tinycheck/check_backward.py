import contextlib
import logging
from typing import NamedTuple

import numpy as np

from .array import zeros_like
from .device import to_numpy
from .errors import DimensionError, GradientCheckError, GradientError
from .graph import DEFAULT_GRAPH_ID, backward
from .numerical_gradient import _as_array_list, calculate_numerical_gradient

logger = logging.getLogger(__name__)

DEFAULT_ATOL = 1e-5
DEFAULT_RTOL = 1e-4


class Mismatch(NamedTuple):
    input_index: int
    index: tuple
    expected: float
    actual: float
    tolerance: float


def rel_error(expected, actual):
    # relative to the expected value, the same measure the tolerance bound uses
    tiny = np.finfo(np.float64).tiny
    return np.abs(actual - expected) / np.maximum(tiny, np.abs(expected))


def find_mismatches(expected, actual, atol, rtol, input_index=0):
    """Every element where ``|actual - expected| > atol + rtol * |expected|``.

    NaN on either side always counts as a mismatch.
    """
    e = to_numpy(expected.data).astype(np.float64)
    a = to_numpy(actual.data).astype(np.float64)
    if e.shape != a.shape:
        raise DimensionError(f"cannot compare gradients of shapes {e.shape} and {a.shape}")

    tolerance = atol + rtol * np.abs(e)
    with np.errstate(invalid="ignore"):
        bad = ~(np.abs(a - e) <= tolerance)
    return [
        Mismatch(input_index, tuple(int(i) for i in index), float(e[index]), float(a[index]), float(tolerance[index]))
        for index in map(tuple, np.argwhere(bad))
    ]


def _summary(input_index, expected, actual):
    e = to_numpy(expected.data).astype(np.float64)
    a = to_numpy(actual.data).astype(np.float64)
    if e.size == 0:
        return f"  input {input_index}: empty"
    with np.errstate(invalid="ignore"):
        abs_err = float(np.max(np.abs(a - e)))
        rel_err = float(np.max(rel_error(e, a)))
    return f"  input {input_index}: max abs error {abs_err:g}, max rel error {rel_err:g}"


def format_report(mismatches, compared, atol, rtol, graph_id=None):
    """Builds the message of a GradientCheckError.

    ``compared`` is a list of ``(input_index, expected, actual)`` triples used
    for the error summary lines.
    """
    where = f" on graph '{graph_id}'" if graph_id is not None else ""
    lines = [
        f"Gradient check failed{where} (atol={atol:g}, rtol={rtol:g}): "
        f"{len(mismatches)} element(s) out of tolerance"
    ]
    for m in mismatches:
        lines.append(
            f"  input {m.input_index} index {m.index}: expected {m.expected:g}, "
            f"actual {m.actual:g}, tolerance {m.tolerance:g}"
        )
    bad_inputs = {m.input_index for m in mismatches}
    for input_index, expected, actual in compared:
        if input_index in bad_inputs:
            lines.append(_summary(input_index, expected, actual))
    return "\n".join(lines)


def _report(compared, atol, rtol, graph_id=None):
    mismatches = []
    for input_index, expected, actual in compared:
        mismatches.extend(find_mismatches(expected, actual, atol, rtol, input_index))
    if mismatches:
        raise GradientCheckError(format_report(mismatches, compared, atol, rtol, graph_id), mismatches)


def check_all_close(expected, actual, atol=DEFAULT_ATOL, rtol=DEFAULT_RTOL):
    """Raises GradientCheckError listing every element out of tolerance."""
    _report([(0, expected, actual)], atol, rtol)


@contextlib.contextmanager
def _rewound_graphs(context, arrays):
    # nodes recorded while checking are dropped again so repeated checks do not grow the graphs
    marks = context.mark()
    try:
        yield
    finally:
        context.rewind(marks, arrays)


def backward_gradients(fprop, inputs, grad_outputs, graph_id=DEFAULT_GRAPH_ID, double_backprop=False):
    """Analytic gradients of ``fprop`` seeded with ``grad_outputs``.

    Returns one entry per input: ``None`` where the input does not require
    grad on ``graph_id``, zeros where it does but no gradient reached it.
    Gradients the inputs already held are set aside for the pass and put
    back afterwards; the ones set on outputs are cleared.
    """
    inputs = list(inputs)
    grad_outputs = list(grad_outputs)

    saved = {}
    for x in inputs:
        if x.is_grad_required(graph_id) and id(x) not in saved:
            saved[id(x)] = (x, x.get_grad(graph_id))
            x.clear_grad(graph_id)

    seeded = []
    try:
        outputs = _as_array_list(fprop(inputs), "fprop")
        if len(outputs) != len(grad_outputs):
            raise DimensionError(f"fprop returned {len(outputs)} outputs for {len(grad_outputs)} grad_outputs")

        for y, gy in zip(outputs, grad_outputs):
            if y.is_grad_required(graph_id):
                y.set_grad(gy, graph_id)
                seeded.append(y)
        if seeded:
            backward(seeded, graph_id, enable_double_backprop=double_backprop)

        grads = []
        for x in inputs:
            if not x.is_grad_required(graph_id):
                grads.append(None)
                continue
            g = x.get_grad(graph_id)
            grads.append(g if g is not None else zeros_like(x))
    finally:
        for y in seeded:
            y.clear_grad(graph_id)
        for x, grad in saved.values():
            x.set_grad(grad, graph_id)
    return grads


def check_backward_computation(
    fprop, inputs, grad_outputs, eps, atol=DEFAULT_ATOL, rtol=DEFAULT_RTOL, graph_id=DEFAULT_GRAPH_ID
):
    """Compares the analytic backward of ``fprop`` with central differences.

    Only inputs that require grad on ``graph_id`` are checked; when none of
    them do there is nothing to verify and the check passes. Mismatches are
    collected over every checked input and raised together as a
    GradientCheckError. Any other error from ``fprop`` or a backward
    function propagates unchanged.
    """
    inputs = list(inputs)
    grad_outputs = list(grad_outputs)
    eps = list(eps)

    requires = [x.is_grad_required(graph_id) for x in inputs]
    if not any(requires):
        logger.debug("no input requires grad on graph %r, skipping backward check", graph_id)
        return
    if len(eps) != len(inputs):
        raise DimensionError(f"got {len(eps)} eps arrays for {len(inputs)} inputs")

    logger.debug(
        "checking backward on graph %r for %d of %d inputs", graph_id, sum(requires), len(inputs)
    )
    with _rewound_graphs(inputs[0]._context, inputs + grad_outputs):
        backward_grads = backward_gradients(fprop, inputs, grad_outputs, graph_id)
        numerical_grads = calculate_numerical_gradient(fprop, inputs, grad_outputs, eps, requires=requires)

    compared = [
        (i, numerical, analytic)
        for i, (numerical, analytic) in enumerate(zip(numerical_grads, backward_grads))
        if requires[i]
    ]
    _report(compared, atol, rtol, graph_id)
    logger.debug("backward check on graph %r passed", graph_id)


def check_double_backward_computation(
    fprop,
    inputs,
    grad_outputs,
    grad_grad_inputs,
    eps,
    atol=DEFAULT_ATOL,
    rtol=DEFAULT_RTOL,
    graph_id=DEFAULT_GRAPH_ID,
):
    """Checks second-order gradients by checking the backward pass itself.

    ``inputs`` and ``grad_outputs`` must both require grad on ``graph_id``.
    ``eps`` holds one array per input followed by one per grad_output, and
    ``grad_grad_inputs`` seeds the first-order gradients.
    """
    inputs = list(inputs)
    grad_outputs = list(grad_outputs)
    n_inputs = len(inputs)

    for kind, arrays in (("input", inputs), ("grad_output", grad_outputs)):
        for i, a in enumerate(arrays):
            if not a.is_grad_required(graph_id):
                raise GradientError(f"{kind} {i} does not require grad on graph '{graph_id}'")
    if len(eps) != n_inputs + len(grad_outputs):
        raise DimensionError(
            f"got {len(eps)} eps arrays for {n_inputs} inputs and {len(grad_outputs)} grad_outputs"
        )

    def backward_fprop(inputs_and_grad_outputs):
        for a in inputs_and_grad_outputs:
            a.require_grad(graph_id)
        xs = inputs_and_grad_outputs[:n_inputs]
        gys = inputs_and_grad_outputs[n_inputs:]
        return backward_gradients(fprop, xs, gys, graph_id, double_backprop=True)

    check_backward_computation(
        backward_fprop, inputs + grad_outputs, grad_grad_inputs, eps, atol, rtol, graph_id
    )
