import numpy as np
import pytest

from tinycheck import (
    Array,
    DeviceSession,
    DimensionError,
    GradientCheckError,
    GradientError,
    check_backward_computation,
    check_double_backward_computation,
    get_default_context,
    set_up_op_nodes,
)
from tinycheck.testing import build_array


def forward_square(inputs):
    return [inputs[0] * inputs[0]]


def forward_square_first_order_only(inputs):
    # the backward treats 2x as a constant, so its own gradient w.r.t. x is lost
    x = inputs[0]
    out = Array(x.data * x.data)
    set_up_op_nodes("square", [x], out, [lambda g, _: g * Array(2.0 * x.data)])
    return [out]


def _double_check(fprop, shape, input_data, grad_output_data, grad_grad_input_data,
                  eps_input_data, eps_grad_output_data, atol, rtol, graph_id):
    inputs = [build_array(shape, input_data)]
    grad_outputs = [build_array(shape, grad_output_data)]
    grad_grad_inputs = [build_array(shape, grad_grad_input_data)]
    eps = [build_array(shape, eps_input_data), build_array(shape, eps_grad_output_data)]

    for x in inputs:
        x.require_grad(graph_id)
    for gy in grad_outputs:
        gy.require_grad(graph_id)

    check_double_backward_computation(fprop, inputs, grad_outputs, grad_grad_inputs, eps, atol, rtol, graph_id)


def test_correct_double_backward():
    _double_check(forward_square, (1, 3), [1, 2, 3], [1, 1, 1], [1, 1, 1],
                  [1e-3] * 3, [1e-3] * 3, 1e-4, 1e-3, "graph_1")


def test_double_backward_two_inputs():
    rng = np.random.default_rng(0)
    shape = (2, 2)
    xs = [Array(rng.standard_normal(shape)).require_grad() for _ in range(2)]
    gy = Array(rng.standard_normal(shape)).require_grad()
    ggxs = [Array(rng.standard_normal(shape)) for _ in range(2)]
    eps = [Array(np.full(shape, 1e-3)) for _ in range(3)]

    check_double_backward_computation(lambda a: [a[0] * a[1]], xs, [gy], ggxs, eps, 1e-4, 1e-3)


def test_double_backward_exp_and_pow():
    rng = np.random.default_rng(3)
    x = Array(rng.uniform(-1, 1, (3,))).require_grad()
    gy = Array(rng.uniform(-1, 1, (3,))).require_grad()
    ggx = Array(rng.uniform(-1, 1, (3,)))
    eps = [Array(np.full((3,), 1e-3)), Array(np.full((3,), 1e-3))]

    check_double_backward_computation(lambda a: [a[0].exp() + a[0] ** 3], [x], [gy], [ggx], eps, 1e-4, 1e-3)


def test_double_backward_through_sum_and_broadcast():
    rng = np.random.default_rng(4)
    x = Array(rng.uniform(-1, 1, (2, 3))).require_grad()
    b = Array(rng.uniform(-1, 1, (3,))).require_grad()
    gy = Array(rng.uniform(-1, 1, (2,))).require_grad()
    ggs = [Array(rng.uniform(-1, 1, (2, 3))), Array(rng.uniform(-1, 1, (3,)))]
    eps = [Array(np.full(s, 1e-3)) for s in ((2, 3), (3,), (2,))]

    def fprop(a):
        h = a[0] * a[1]
        return [(h * h).sum(axis=1)]

    check_double_backward_computation(fprop, [x, b], [gy], ggs, eps, 1e-4, 1e-3)


def test_first_order_only_backward_fails_second_order():
    x = build_array((3,), [1, 2, 3]).require_grad()
    gy = build_array((3,), [1, -1, 0.5]).require_grad()
    eps = [build_array((3,), [1e-3] * 3), build_array((3,), [1e-3] * 3)]

    # first order is fine
    check_backward_computation(forward_square_first_order_only, [x], [gy], eps[:1])

    with pytest.raises(GradientCheckError) as excinfo:
        check_double_backward_computation(
            forward_square_first_order_only, [x], [gy], [build_array((3,), [1, 1, 1])], eps, 1e-4, 1e-3
        )
    # only the gradient w.r.t. x is wrong, the one w.r.t. the seed is not
    assert {m.input_index for m in excinfo.value.mismatches} == {0}
    assert [m.index for m in excinfo.value.mismatches] == [(0,), (1,), (2,)]


def test_requires_grad_on_grad_outputs():
    x = build_array((3,), [1, 2, 3]).require_grad("graph_1")
    gy = build_array((3,), [1, 1, 1])
    eps = [build_array((3,), [1e-3] * 3), build_array((3,), [1e-3] * 3)]

    with pytest.raises(GradientError):
        check_double_backward_computation(
            forward_square, [x], [gy], [build_array((3,), [1, 1, 1])], eps, 1e-4, 1e-3, "graph_1"
        )


def test_requires_grad_on_inputs():
    x = build_array((3,), [1, 2, 3])
    gy = build_array((3,), [1, 1, 1]).require_grad()
    eps = [build_array((3,), [1e-3] * 3), build_array((3,), [1e-3] * 3)]

    with pytest.raises(GradientError):
        check_double_backward_computation(forward_square, [x], [gy], [build_array((3,), [1, 1, 1])], eps)


def test_eps_must_cover_grad_outputs():
    x = build_array((3,), [1, 2, 3]).require_grad()
    gy = build_array((3,), [1, 1, 1]).require_grad()

    with pytest.raises(DimensionError):
        check_double_backward_computation(
            forward_square, [x], [gy], [build_array((3,), [1, 1, 1])], [build_array((3,), [1e-3] * 3)]
        )


def test_repeated_double_checks_do_not_grow_graph():
    x = build_array((4,), [1, 2, 3, 4]).require_grad("graph_1")
    gy = build_array((4,), [1, 1, 1, 1]).require_grad("graph_1")
    ggx = build_array((4,), [1, 1, 1, 1])
    eps = [build_array((4,), [1e-3] * 4), build_array((4,), [1e-3] * 4)]
    graph = get_default_context().get_graph("graph_1")
    sizes = (len(graph.array_nodes), len(graph.op_nodes))

    for _ in range(3):
        check_double_backward_computation(forward_square, [x], [gy], [ggx], eps, 1e-4, 1e-3, "graph_1")
        assert (len(graph.array_nodes), len(graph.op_nodes)) == sizes
    assert x.is_grad_required("graph_1") and gy.is_grad_required("graph_1")
    assert x.get_grad("graph_1") is None and gy.get_grad("graph_1") is None


def main():
    for test in (
        test_correct_double_backward,
        test_double_backward_two_inputs,
        test_double_backward_exp_and_pow,
        test_double_backward_through_sum_and_broadcast,
        test_first_order_only_backward_fails_second_order,
        test_requires_grad_on_grad_outputs,
        test_requires_grad_on_inputs,
        test_eps_must_cover_grad_outputs,
        test_repeated_double_checks_do_not_grow_graph,
    ):
        with DeviceSession():
            test()
    print("[OK] double backward tests passed")

if __name__ == "__main__":
    main()
