import enum

import numpy as np

from .errors import DtypeError


class Dtype(enum.Enum):
    BOOL = "bool"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    FLOAT16 = "float16"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @classmethod
    def from_numpy(cls, dtype):
        if isinstance(dtype, Dtype):
            return dtype
        name = np.dtype(dtype).name
        try:
            return cls(name)
        except ValueError:
            raise DtypeError(f"unsupported dtype: {name}") from None

    @property
    def numpy_dtype(self):
        return np.dtype(self.value)

    @property
    def kind(self):
        if self is Dtype.BOOL:
            return "bool"
        if self.value.startswith("float"):
            return "float"
        return "int"

    @property
    def is_float(self):
        return self.kind == "float"

    @property
    def itemsize(self):
        return self.numpy_dtype.itemsize


def visit_dtype(dtype, handlers):
    """Dispatch on an element type.

    ``handlers`` maps either an exact ``Dtype`` or one of the kinds
    ``"float"``, ``"int"``, ``"bool"`` to a callable taking the ``Dtype``.
    An exact match wins over a kind match.
    """
    dtype = Dtype.from_numpy(dtype)
    for key in (dtype, dtype.kind):
        if key in handlers:
            return handlers[key](dtype)
    raise DtypeError(f"no handler for dtype {dtype.value}")
