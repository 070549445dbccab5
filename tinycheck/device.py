import numpy as np

from .errors import DeviceError

try:
    import cupy as cp
except Exception:
    cp = None

BACKENDS = ("native", "cuda")


def get_xp_from_array(x):
    # works for numpy and cuda ndarrays
    mod = type(x).__module__.split(".")[0]
    if mod == "cupy":
        return cp
    return np

def get_xp(device: str):
    if device in ("native", "cpu", "np", "numpy"):
        return np
    if device in ("gpu", "cuda", "cupy"):
        if cp is None:
            raise ImportError("cupy not installed")
        return cp
    raise DeviceError(f"unknown device: {device}")

def to_numpy(x):
    # converting for reports and comparisons
    if cp is not None and isinstance(x, cp.ndarray):
        return cp.asnumpy(x)
    return np.asarray(x)


def parse_device_id(device_id):
    """Accepts "native", "cuda:1" or a (backend, index) pair."""
    if isinstance(device_id, Device):
        return device_id.backend, device_id.index
    if isinstance(device_id, (tuple, list)):
        backend, index = device_id
    else:
        backend, _, index = str(device_id).partition(":")
        index = index or 0
    try:
        index = int(index)
    except ValueError:
        raise DeviceError(f"invalid device index in {device_id!r}") from None
    if backend not in BACKENDS:
        raise DeviceError(f"unknown backend: {backend}")
    if index < 0:
        raise DeviceError(f"invalid device index in {device_id!r}")
    return backend, index


class Device:
    def __init__(self, backend="native", index=0):
        self.backend, self.index = parse_device_id((backend, index))

    @property
    def name(self):
        return f"{self.backend}:{self.index}"

    @property
    def xp(self):
        return get_xp(self.backend)

    def allocate(self, bytesize):
        # zero bytes still yields a real (empty) buffer
        bytesize = int(bytesize)
        if bytesize < 0:
            raise ValueError(f"cannot allocate {bytesize} bytes")
        if self.backend == "cuda":
            xp = self.xp
            with xp.cuda.Device(self.index):
                return xp.empty((bytesize,), dtype=np.uint8)
        return np.empty((bytesize,), dtype=np.uint8)

    def __eq__(self, other):
        return isinstance(other, Device) and (self.backend, self.index) == (other.backend, other.index)

    def __hash__(self):
        return hash((self.backend, self.index))

    def __repr__(self):
        return f"Device('{self.name}')"
