from .array import Array, array, empty_like, full_like, ones_like, zeros_like
from .check_backward import (
    DEFAULT_ATOL,
    DEFAULT_RTOL,
    Mismatch,
    backward_gradients,
    check_all_close,
    check_backward_computation,
    check_double_backward_computation,
)
from .context import Context, DeviceSession, get_default_context
from .device import Device
from .dtype import Dtype, visit_dtype
from .errors import (
    DeviceError,
    DimensionError,
    DtypeError,
    GradientCheckError,
    GradientError,
    TinycheckError,
)
from .graph import DEFAULT_GRAPH_ID, backward, no_backprop_mode, set_up_op_nodes
from .indexer import Indexer
from .numerical_gradient import calculate_numerical_gradient, perturb
