import numpy as np

from .context import get_default_context
from .device import cp, get_xp, get_xp_from_array, to_numpy
from .dtype import Dtype
from .errors import DimensionError, GradientError
from .graph import DEFAULT_GRAPH_ID, set_up_op_nodes


def _unbroadcast(grad, target_shape):
    target_shape = tuple(target_shape)
    if grad.shape == target_shape:
        return grad

    # If target is scalar, everything was broadcast to something bigger → sum all
    if target_shape == ():
        return grad.sum()

    g = grad
    # If grad has extra leading dims, sum them out
    while g.ndim > len(target_shape):
        g = g.sum(axis=0)

    # Now same ndim; for broadcasted dims (target=1), sum over that axis
    # Iterate from last axis backward to avoid axis index shifting issues
    for axis in range(len(target_shape) - 1, -1, -1):
        if target_shape[axis] == 1 and g.shape[axis] != 1:
            g = g.sum(axis=axis, keepdims=True)

    return g


def _is_ndarray(x):
    return isinstance(x, np.ndarray) or (cp is not None and isinstance(x, cp.ndarray))


#an array is a value that can take part in any number of graphs at once
class Array:
    def __init__(self, data, context=None):
        if isinstance(data, Array):
            data = data.data
        self.data = data if _is_ndarray(data) else np.asarray(data)
        Dtype.from_numpy(self.data.dtype)
        self._context = context if context is not None else get_default_context()
        self._nodes = {}

    @property
    def shape(self):
        return tuple(self.data.shape)

    @property
    def ndim(self):
        return self.data.ndim

    @property
    def size(self):
        return int(self.data.size)

    @property
    def dtype(self):
        return Dtype.from_numpy(self.data.dtype)

    @property
    def device(self):
        return "cuda" if get_xp_from_array(self.data) is not np else "native"

    @property
    def T(self):
        return self.transpose()

    def to(self, device):
        xp = get_xp(device)
        if xp is np:
            return Array(to_numpy(self.data), context=self._context)
        return Array(xp.asarray(self.data), context=self._context)

    def copy(self):
        return Array(self.data.copy(), context=self._context)

    def __repr__(self):
        graphs = f", graphs={sorted(self._nodes)}" if self._nodes else ""
        return f"Array({to_numpy(self.data)!r}{graphs})"

    # gradient bookkeeping, one entry per graph id

    def require_grad(self, graph_id=DEFAULT_GRAPH_ID):
        if graph_id not in self._nodes:
            graph = self._context.get_graph(graph_id)
            self._nodes[graph_id] = graph.add_array_node(self.shape)
        return self

    def is_grad_required(self, graph_id=DEFAULT_GRAPH_ID):
        return graph_id in self._nodes

    def _node(self, graph_id):
        if graph_id not in self._nodes:
            raise GradientError(f"array does not require grad on graph '{graph_id}'")
        return self._context.get_graph(graph_id).array_nodes[self._nodes[graph_id]]

    def get_grad(self, graph_id=DEFAULT_GRAPH_ID):
        return self._node(graph_id).grad

    def set_grad(self, grad, graph_id=DEFAULT_GRAPH_ID):
        node = self._node(graph_id)
        if grad is not None:
            grad = grad if isinstance(grad, Array) else Array(grad, context=self._context)
            if grad.shape != self.shape:
                raise DimensionError(f"gradient shape {grad.shape} does not match array shape {self.shape}")
        node.grad = grad

    def clear_grad(self, graph_id=DEFAULT_GRAPH_ID):
        self._node(graph_id).grad = None

    # differentiable operations

    def _wrap(self, other):
        if isinstance(other, Array):
            if get_xp_from_array(self.data) is not get_xp_from_array(other.data):
                raise ValueError("cannot mix numpy and cupy arrays in one operation")
            return other
        xp = get_xp_from_array(self.data)
        dtype = self.data.dtype if self.dtype.is_float else None
        return Array(xp.asarray(other, dtype=dtype), context=self._context)

    def _make(self, data, name, inputs, backward_functions):
        out = Array(data, context=self._context)
        set_up_op_nodes(name, inputs, out, backward_functions)
        return out

    def __add__(self, other):
        other = self._wrap(other)
        a, b = self, other
        return self._make(
            a.data + b.data, "add", [a, b],
            [lambda g, _: _unbroadcast(g, a.shape), lambda g, _: _unbroadcast(g, b.shape)],
        )

    def __neg__(self):
        return self._make(-self.data, "neg", [self], [lambda g, _: -g])

    def __sub__(self, other):
        other = self._wrap(other)
        return self + (-other)

    def __rsub__(self, other):
        other = self._wrap(other)
        return other - self

    def __mul__(self, other):
        other = self._wrap(other)
        a, b = self, other
        return self._make(
            a.data * b.data, "mul", [a, b],
            [lambda g, _: _unbroadcast(g * b, a.shape), lambda g, _: _unbroadcast(g * a, b.shape)],
        )

    def __truediv__(self, other):
        other = self._wrap(other)
        a, b = self, other
        return self._make(
            a.data / b.data, "div", [a, b],
            [
                lambda g, _: _unbroadcast(g / b, a.shape),
                lambda g, _: _unbroadcast(-(g * a) / (b * b), b.shape),
            ],
        )

    def __rtruediv__(self, other):
        other = self._wrap(other)
        return other / self

    def __pow__(self, p):
        if isinstance(p, Array):
            raise TypeError("exponent must be a Python scalar")
        a = self
        return self._make(a.data ** p, "pow", [a], [lambda g, _: g * (a ** (p - 1)) * p])

    def exp(self):
        xp = get_xp_from_array(self.data)
        out = Array(xp.exp(self.data), context=self._context)
        set_up_op_nodes("exp", [self], out, [lambda g, _: g * out])
        return out

    def sum(self, axis=None, keepdims=False):
        a = self
        data = a.data.sum(axis=axis, keepdims=keepdims)

        def _backward(g, _):
            if not keepdims and axis is not None:
                axes = (axis,) if isinstance(axis, int) else tuple(axis)
                axes = {ax % a.ndim for ax in axes}
                g = g.reshape(tuple(1 if i in axes else d for i, d in enumerate(a.shape)))
            return g.broadcast_to(a.shape)

        return self._make(data, "sum", [a], [_backward])

    def reshape(self, *shape):
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        a = self
        return self._make(a.data.reshape(shape), "reshape", [a], [lambda g, _: g.reshape(a.shape)])

    def broadcast_to(self, shape):
        xp = get_xp_from_array(self.data)
        a = self
        shape = tuple(shape)
        if shape == a.shape:
            return a
        return self._make(
            xp.broadcast_to(a.data, shape), "broadcast_to", [a], [lambda g, _: _unbroadcast(g, a.shape)]
        )

    def transpose(self, *axes):
        if len(axes) == 1 and isinstance(axes[0], (tuple, list)):
            axes = tuple(axes[0])
        if not axes:
            axes = tuple(reversed(range(self.ndim)))
        inverse = tuple(int(i) for i in np.argsort(axes))
        return self._make(
            self.data.transpose(axes), "transpose", [self], [lambda g, _: g.transpose(inverse)]
        )

    def __matmul__(self, other):
        other = self._wrap(other)
        a, b = self, other
        if a.ndim != 2 or b.ndim != 2:
            raise DimensionError(f"matmul expects 2-D arrays, got {a.shape} and {b.shape}")
        if a.shape[1] != b.shape[0]:
            raise DimensionError(f"matmul shape mismatch: {a.shape} @ {b.shape}")
        return self._make(a.data @ b.data, "matmul", [a, b], [lambda g, _: g @ b.T, lambda g, _: a.T @ g])

    __radd__ = __add__
    __rmul__ = __mul__


def array(data, dtype=None, device=None):
    xp = get_xp(device) if device is not None else get_default_context().device.xp
    return Array(xp.asarray(data, dtype=dtype))

def empty_like(a):
    xp = get_xp_from_array(a.data)
    return Array(xp.empty(a.shape, dtype=a.data.dtype), context=a._context)

def zeros_like(a):
    xp = get_xp_from_array(a.data)
    return Array(xp.zeros(a.shape, dtype=a.data.dtype), context=a._context)

def ones_like(a):
    xp = get_xp_from_array(a.data)
    return Array(xp.ones(a.shape, dtype=a.data.dtype), context=a._context)

def full_like(a, value):
    xp = get_xp_from_array(a.data)
    return Array(xp.full(a.shape, value, dtype=a.data.dtype), context=a._context)
