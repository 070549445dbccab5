import numpy as np

from .errors import DimensionError


class Indexer:
    """Walks the logical index space of a shape in C order.

    Indices are multi-dimensional tuples, never memory offsets, so the same
    indexer works for views with arbitrary strides.
    """

    def __init__(self, shape):
        shape = tuple(int(d) for d in shape)
        if any(d < 0 for d in shape):
            raise DimensionError(f"negative dimension in shape {shape}")
        self.shape = shape
        self.total_size = int(np.prod(shape, dtype=np.int64))
        self.index = (0,) * len(shape)

    @property
    def ndim(self):
        return len(self.shape)

    def set(self, i):
        if not 0 <= i < self.total_size:
            raise IndexError(f"linear index {i} out of range for shape {self.shape}")
        if self.ndim == 0:
            self.index = ()
        else:
            self.index = tuple(int(v) for v in np.unravel_index(i, self.shape))
        return self.index

    def __len__(self):
        return self.total_size

    def __iter__(self):
        for i in range(self.total_size):
            yield self.set(i)
