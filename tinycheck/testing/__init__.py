from .array import build_array
