import logging

import numpy as np

from .array import Array
from .device import get_xp_from_array
from .dtype import Dtype, visit_dtype
from .errors import DimensionError, DtypeError, GradientError
from .indexer import Indexer

logger = logging.getLogger(__name__)


def _check_perturbable(array, eps):
    if array.shape != eps.shape:
        raise DimensionError(f"eps shape {eps.shape} does not match array shape {array.shape}")
    if not array.dtype.is_float:
        raise DtypeError(f"cannot perturb an array of dtype {array.dtype.value}")


def perturb(array, eps, index=None):
    """Returns ``(array + eps, array - eps)`` as new arrays.

    With ``index`` only that element is shifted, every other element keeps
    its value. ``array`` itself is never written to.
    """
    _check_perturbable(array, eps)
    if index is None:
        plus = array.data + eps.data.astype(array.data.dtype, copy=False)
        minus = array.data - eps.data.astype(array.data.dtype, copy=False)
    else:
        index = tuple(index)
        plus = array.data.copy()
        minus = array.data.copy()
        plus[index] += eps.data[index]
        minus[index] -= eps.data[index]
    return Array(plus, context=array._context), Array(minus, context=array._context)


def _as_array_list(values, what):
    if not isinstance(values, (list, tuple)):
        raise TypeError(f"{what} must return a list or tuple of arrays, got {type(values).__name__}")
    for v in values:
        if not isinstance(v, Array):
            raise TypeError(f"{what} must return arrays, got {type(v).__name__}")
    return list(values)


def _evaluate(fprop, inputs, i, replacement):
    # every call sees fresh copies so fprop cannot leak graph state between calls
    args = [replacement if j == i else x.copy() for j, x in enumerate(inputs)]
    return _as_array_list(fprop(args), "fprop")


def _accumulator_dtype(dtype):
    return visit_dtype(dtype, {
        Dtype.FLOAT16: lambda _: np.dtype(np.float32),
        "float": lambda dt: dt.numpy_dtype,
    })


def calculate_numerical_gradient(fprop, inputs, grad_outputs, eps, requires=None):
    """Central-difference estimate of the seeded gradient of ``fprop``.

    For every element of every input, ``fprop`` is evaluated with that
    element shifted by ``+eps`` and ``-eps``; the difference quotient of each
    output is dotted with its ``grad_outputs`` seed and summed over outputs.
    Returns one gradient per input, or ``None`` where ``requires`` is false.
    """
    inputs = list(inputs)
    grad_outputs = list(grad_outputs)
    eps = list(eps)
    if len(eps) != len(inputs):
        raise DimensionError(f"got {len(eps)} eps arrays for {len(inputs)} inputs")
    if requires is None:
        requires = [True] * len(inputs)
    elif len(requires) != len(inputs):
        raise DimensionError(f"got {len(requires)} requirement flags for {len(inputs)} inputs")

    base = [x.copy() for x in inputs]
    grads = []
    evaluations = 0
    for i, (x, e, required) in enumerate(zip(base, eps, requires)):
        if not required:
            grads.append(None)
            continue
        _check_perturbable(x, e)
        xp = get_xp_from_array(x.data)
        if not bool(xp.all(e.data != 0)):
            raise GradientError(f"eps for input {i} contains zeros")

        acc_dtype = _accumulator_dtype(x.dtype)
        grad = xp.zeros(x.shape, dtype=acc_dtype)
        for index in Indexer(x.shape):
            plus, minus = perturb(x, e, index)
            ys_plus = _evaluate(fprop, base, i, plus)
            ys_minus = _evaluate(fprop, base, i, minus)
            evaluations += 2
            if len(ys_plus) != len(grad_outputs) or len(ys_minus) != len(grad_outputs):
                raise DimensionError(
                    f"fprop returned {len(ys_plus)} outputs for {len(grad_outputs)} grad_outputs"
                )

            total = 0
            for y_plus, y_minus, gy in zip(ys_plus, ys_minus, grad_outputs):
                if y_plus.shape != gy.shape:
                    raise DimensionError(
                        f"grad_output shape {gy.shape} does not match output shape {y_plus.shape}"
                    )
                dy = y_plus.data.astype(acc_dtype) - y_minus.data.astype(acc_dtype)
                total += (dy * gy.data.astype(acc_dtype)).sum()
            grad[index] = total / (2 * e.data[index].astype(acc_dtype))

        grads.append(Array(grad.astype(x.data.dtype, copy=False), context=x._context))

    logger.debug("numerical gradient took %d forward evaluations", evaluations)
    return grads
