import numpy as np
import pytest

from tinycheck import Array, DeviceSession, DimensionError, Dtype, DtypeError, Indexer, visit_dtype


def test_dtype_from_numpy():
    assert Dtype.from_numpy(np.float32) is Dtype.FLOAT32
    assert Dtype.from_numpy("int64") is Dtype.INT64
    assert Dtype.from_numpy(Dtype.BOOL) is Dtype.BOOL
    assert Dtype.FLOAT16.is_float and not Dtype.INT8.is_float
    assert Dtype.BOOL.kind == "bool"
    assert Dtype.FLOAT64.itemsize == 8
    with pytest.raises(DtypeError):
        Dtype.from_numpy(np.complex128)


def test_array_rejects_unsupported_dtype():
    with pytest.raises(DtypeError):
        Array(np.array(["a", "b"]))
    assert Array(np.array([1, 2], dtype=np.int32)).dtype is Dtype.INT32


def test_visit_dtype():
    handlers = {
        Dtype.FLOAT16: lambda dt: "half",
        "float": lambda dt: f"float{dt.itemsize * 8}",
        "int": lambda dt: "int",
    }
    assert visit_dtype(np.float16, handlers) == "half"
    assert visit_dtype(np.float32, handlers) == "float32"
    assert visit_dtype(Dtype.UINT8, handlers) == "int"
    with pytest.raises(DtypeError):
        visit_dtype(Dtype.BOOL, handlers)


def test_indexer_order():
    indexer = Indexer((2, 3))
    assert indexer.total_size == 6
    assert list(indexer) == list(np.ndindex(2, 3))
    assert indexer.set(4) == (1, 1)
    assert indexer.index == (1, 1)


def test_indexer_scalar_and_empty():
    assert list(Indexer(())) == [()]
    assert list(Indexer((0, 3))) == []
    assert len(Indexer((0, 3))) == 0


def test_indexer_bounds():
    with pytest.raises(IndexError):
        Indexer((2,)).set(2)
    with pytest.raises(DimensionError):
        Indexer((2, -1))


def main():
    for test in (
        test_dtype_from_numpy,
        test_array_rejects_unsupported_dtype,
        test_visit_dtype,
        test_indexer_order,
        test_indexer_scalar_and_empty,
        test_indexer_bounds,
    ):
        with DeviceSession():
            test()
    print("[OK] dtype/indexer tests passed")

if __name__ == "__main__":
    main()
