import logging
import os

from .device import Device, parse_device_id
from .graph import Graph

logger = logging.getLogger(__name__)

DEVICE_ENV = "TINYCHECK_DEVICE"
DEFAULT_DEVICE_ID = "native:0"


class Context:
    """Owns the default device and the graphs keyed by graph id."""

    def __init__(self, device=None):
        self.device = device if device is not None else Device()
        self._graphs = {}

    def get_graph(self, graph_id):
        graph = self._graphs.get(graph_id)
        if graph is None:
            graph = Graph(graph_id)
            self._graphs[graph_id] = graph
        return graph

    @property
    def graph_ids(self):
        return list(self._graphs)

    def mark(self):
        return {graph_id: (len(g.array_nodes), len(g.op_nodes)) for graph_id, g in self._graphs.items()}

    def rewind(self, marks, arrays=()):
        """Drops every node recorded since ``mark()`` returned ``marks``.

        ``arrays`` lose their membership in any node that no longer exists.
        """
        for graph_id in list(self._graphs):
            if graph_id in marks:
                self._graphs[graph_id].truncate(*marks[graph_id])
            else:
                del self._graphs[graph_id]
        for a in arrays:
            for graph_id, index in list(a._nodes.items()):
                if graph_id not in marks or index >= marks[graph_id][0]:
                    del a._nodes[graph_id]

    def release(self):
        self._graphs.clear()


_default_context = None


def get_default_context():
    global _default_context
    if _default_context is None:
        _default_context = Context()
    return _default_context


def set_default_context(context):
    global _default_context
    _default_context = context


def default_device_id():
    return os.getenv(DEVICE_ENV, DEFAULT_DEVICE_ID)


class DeviceSession:
    """Installs a fresh context on a device and tears it down again.

    Usable as a context manager or through explicit ``open()``/``close()``.
    """

    def __init__(self, device_id=None):
        if device_id is None:
            device_id = default_device_id()
        self.device = Device(*parse_device_id(device_id))
        self.context = None
        self._previous = None

    def open(self):
        if self.context is not None:
            raise RuntimeError("device session already open")
        # touch the backend so a missing cupy fails at setup, not mid-test
        self.device.xp
        self._previous = _default_context
        self.context = Context(self.device)
        set_default_context(self.context)
        logger.debug("device session opened on %s", self.device.name)
        return self

    def close(self):
        if self.context is None:
            return
        self.context.release()
        set_default_context(self._previous)
        self.context = None
        self._previous = None
        logger.debug("device session on %s closed", self.device.name)

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
