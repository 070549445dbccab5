import contextlib
import heapq
import logging

from .errors import DimensionError, GradientError

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_ID = "default"

_backprop_enabled = True


@contextlib.contextmanager
def no_backprop_mode():
    """Operations run inside this block record no op nodes."""
    global _backprop_enabled
    prev = _backprop_enabled
    _backprop_enabled = False
    try:
        yield
    finally:
        _backprop_enabled = prev


class ArrayNode:
    __slots__ = ("shape", "grad", "creator", "rank")

    def __init__(self, shape, creator=None, rank=0):
        self.shape = shape
        self.grad = None
        self.creator = creator
        self.rank = rank


class OpNode:
    __slots__ = ("name", "next_nodes", "backward_functions", "output", "graph_ids", "rank")

    def __init__(self, name, next_nodes, backward_functions, output, graph_ids, rank):
        self.name = name
        self.next_nodes = tuple(next_nodes)
        self.backward_functions = tuple(backward_functions)
        self.output = output
        self.graph_ids = tuple(graph_ids)
        self.rank = rank


class Graph:
    """Arena of array and op nodes for one graph id.

    Nodes only ever point at each other through their index in the arena.
    """

    def __init__(self, graph_id):
        self.graph_id = graph_id
        self.array_nodes = []
        self.op_nodes = []

    def add_array_node(self, shape):
        self.array_nodes.append(ArrayNode(tuple(shape)))
        return len(self.array_nodes) - 1

    def add_op_node(self, name, next_nodes, backward_functions, output, graph_ids):
        rank = 1 + max((self.array_nodes[i].rank for i in next_nodes), default=0)
        self.op_nodes.append(OpNode(name, next_nodes, backward_functions, output, graph_ids, rank))
        op_index = len(self.op_nodes) - 1
        out = self.array_nodes[output]
        out.creator = op_index
        out.rank = rank
        return op_index

    def truncate(self, n_array_nodes, n_op_nodes):
        """Drops every node recorded after the given arena lengths."""
        del self.array_nodes[n_array_nodes:]
        del self.op_nodes[n_op_nodes:]


def set_up_op_nodes(name, inputs, output, backward_functions):
    """Registers ``output`` as produced by an op with one backward per input.

    Each backward function is called as ``fn(gout, graph_ids)`` and must
    return the gradient for its input, as an ``Array`` of the input's shape.
    Nothing is recorded for graphs none of the inputs belong to.
    """
    inputs = list(inputs)
    backward_functions = list(backward_functions)
    if len(inputs) != len(backward_functions):
        raise GradientError(
            f"{name}: got {len(backward_functions)} backward functions for {len(inputs)} inputs"
        )
    if not _backprop_enabled:
        return

    graph_ids = []
    for x in inputs:
        for graph_id in x._nodes:
            if graph_id not in graph_ids:
                graph_ids.append(graph_id)

    context = output._context
    for graph_id in graph_ids:
        if graph_id in output._nodes:
            raise GradientError(f"{name}: output already has a creator on graph '{graph_id}'")
        graph = context.get_graph(graph_id)
        next_nodes = []
        fns = []
        for x, fn in zip(inputs, backward_functions):
            if graph_id in x._nodes:
                next_nodes.append(x._nodes[graph_id])
                fns.append(fn)
        out_index = graph.add_array_node(output.shape)
        output._nodes[graph_id] = out_index
        graph.add_op_node(name, next_nodes, fns, out_index, graph_ids)


def backward(outputs, graph_id=DEFAULT_GRAPH_ID, enable_double_backprop=False):
    """Reverse-mode pass over ``graph_id`` starting from ``outputs``.

    Outputs without a gradient are seeded with ones. Gradients accumulate on
    leaf arrays (and on the outputs themselves); intermediate gradients are
    dropped once their creator has been processed.
    """
    from .array import Array, ones_like

    if isinstance(outputs, Array):
        outputs = [outputs]
    outputs = list(outputs)
    if not outputs:
        return

    context = outputs[0]._context
    graph = context.get_graph(graph_id)

    retained = set()
    for out in outputs:
        if graph_id not in out._nodes:
            raise GradientError(f"output does not belong to graph '{graph_id}'")
        index = out._nodes[graph_id]
        node = graph.array_nodes[index]
        if node.grad is None:
            node.grad = ones_like(out)
        retained.add(index)

    heap = []
    queued = set()

    def push(array_index):
        creator = graph.array_nodes[array_index].creator
        if creator is not None and creator not in queued:
            queued.add(creator)
            heapq.heappush(heap, (-graph.op_nodes[creator].rank, creator))

    for index in retained:
        push(index)

    mode = contextlib.nullcontext() if enable_double_backprop else no_backprop_mode()
    steps = 0
    with mode:
        while heap:
            _, op_index = heapq.heappop(heap)
            op = graph.op_nodes[op_index]
            out_node = graph.array_nodes[op.output]
            gout = out_node.grad
            if gout is None:
                continue
            for next_index, fn in zip(op.next_nodes, op.backward_functions):
                gin = fn(gout, list(op.graph_ids))
                node = graph.array_nodes[next_index]
                if not isinstance(gin, Array):
                    raise GradientError(f"{op.name}: backward function must return an Array")
                if gin.shape != node.shape:
                    raise DimensionError(
                        f"{op.name}: gradient shape {gin.shape} does not match input shape {node.shape}"
                    )
                node.grad = gin if node.grad is None else node.grad + gin
                push(next_index)
            if op.output not in retained:
                out_node.grad = None
            steps += 1

    logger.debug("backward on graph %r ran %d op nodes", graph_id, steps)
