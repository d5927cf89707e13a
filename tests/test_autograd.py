import numpy as np
import pytest

from minitransformer.autograd import (
    Tensor,
    VarStore,
    embedding,
    gather_last,
    layer_norm,
    log_softmax,
    relu,
    softmax,
    where,
)

EPS = 1e-6
RNG = np.random.default_rng(7)


def scalarize(t):
    weights = np.linspace(-1.0, 2.0, t.data.size).reshape(t.shape)
    return (t * Tensor(weights)).mean()


def numeric_grad(fn, arrays, index):
    base = [a.copy() for a in arrays]
    target = base[index]
    grad = np.zeros_like(target)
    for pos in np.ndindex(target.shape):
        original = target[pos]
        target[pos] = original + EPS
        plus = fn(*[Tensor(a) for a in base]).item()
        target[pos] = original - EPS
        minus = fn(*[Tensor(a) for a in base]).item()
        target[pos] = original
        grad[pos] = (plus - minus) / (2 * EPS)
    return grad


def assert_gradients(fn, *arrays):
    tensors = [Tensor(a.copy(), requires_grad=True) for a in arrays]
    fn(*tensors).backward()
    for i, tensor in enumerate(tensors):
        np.testing.assert_allclose(
            tensor.grad, numeric_grad(fn, arrays, i), rtol=1e-5, atol=1e-6
        )


def test_add_broadcast_gradients_sum_to_one():
    a = Tensor(RNG.standard_normal((2, 3)), requires_grad=True)
    b = Tensor(RNG.standard_normal(3), requires_grad=True)
    (a + b).mean().backward()
    assert a.grad.shape == a.shape
    assert b.grad.shape == b.shape
    assert a.grad.sum() == pytest.approx(1.0)
    assert b.grad.sum() == pytest.approx(1.0)
    assert np.allclose(a.grad, a.grad.flat[0])


def test_matmul_gradients():
    assert_gradients(
        lambda a, b: scalarize(a.matmul(b)),
        RNG.standard_normal((3, 4)),
        RNG.standard_normal((4, 2)),
    )


def test_batched_matmul_gradients():
    assert_gradients(
        lambda a, b: scalarize(a @ b),
        RNG.standard_normal((2, 3, 4)),
        RNG.standard_normal((2, 4, 3)),
    )


def test_matmul_rejects_vectors():
    with pytest.raises(ValueError):
        Tensor(np.ones(3)).matmul(Tensor(np.ones((3, 2))))


def test_mul_and_neg_gradients():
    assert_gradients(
        lambda a, b: scalarize(-(a * b) + a),
        RNG.standard_normal((2, 3)),
        RNG.standard_normal((1, 3)),
    )


def test_reshape_accepts_tuple_or_ints():
    data = RNG.standard_normal((2, 6))
    x = Tensor(data)
    assert x.reshape(3, 4).shape == (3, 4)
    assert x.reshape((4, 3)).shape == (4, 3)
    assert np.array_equal(x.reshape(12).data, data.ravel())
    assert_gradients(lambda a: scalarize(a.reshape(3, 4)), data)


def test_transpose_round_trip_and_gradient():
    data = RNG.standard_normal((2, 3, 4))
    x = Tensor(data)
    assert x.transpose(1, 2).shape == (2, 4, 3)
    assert np.array_equal(x.transpose(0, 2).transpose(0, 2).data, data)
    assert_gradients(lambda a: scalarize(a.transpose(0, 1)), data)


def test_mean_of_constant_is_constant():
    assert Tensor(np.full((2, 3), 4.0)).mean().item() == pytest.approx(4.0)


def test_item_rejects_many_elements():
    with pytest.raises(ValueError):
        Tensor(np.ones((2, 2))).item()


def test_backward_without_gradients_raises():
    with pytest.raises(RuntimeError):
        Tensor(np.ones(3)).mean().backward()


def test_integer_tensor_cannot_require_grad():
    with pytest.raises(TypeError):
        Tensor(np.arange(3), requires_grad=True)


def test_gradients_accumulate_until_zeroed():
    x = Tensor(RNG.standard_normal((2, 2)), requires_grad=True)
    (x * x).mean().backward()
    first = x.grad.copy()
    (x * x).mean().backward()
    np.testing.assert_allclose(x.grad, 2 * first)
    x.zero_grad()
    assert x.grad is None


def test_shared_subexpression_gradient():
    data = RNG.standard_normal((3, 3))
    assert_gradients(lambda a: scalarize((a * a) @ a + a), data)


def test_relu_values_and_gradient():
    data = np.array([-1.5, 0.5, 2.0])
    x = Tensor(data, requires_grad=True)
    out = relu(x)
    np.testing.assert_allclose(out.data, np.where(data > 0, data, 0.0))
    out.backward()
    np.testing.assert_allclose(x.grad, (data > 0).astype(float))


def test_maximum_gradient_away_from_ties():
    assert_gradients(
        lambda a, b: scalarize(a.maximum(b)),
        np.array([[1.0, -2.0, 3.0]]),
        np.array([[0.5, -1.0, 4.0]]),
    )


def test_softmax_rows_sum_to_one_and_gradient():
    data = RNG.standard_normal((2, 5)) * 3
    out = softmax(Tensor(data), -1)
    np.testing.assert_allclose(out.data.sum(axis=-1), np.ones(2))
    assert (out.data > 0).all()
    assert_gradients(lambda a: scalarize(softmax(a, -1)), data)


def test_softmax_is_shift_invariant():
    data = RNG.standard_normal((3, 4))
    np.testing.assert_allclose(
        softmax(Tensor(data), -1).data, softmax(Tensor(data + 100.0), -1).data
    )


def test_log_softmax_matches_softmax_and_gradient():
    data = RNG.standard_normal((2, 3, 4))
    np.testing.assert_allclose(
        np.exp(log_softmax(Tensor(data), -1).data), softmax(Tensor(data), -1).data
    )
    assert_gradients(lambda a: scalarize(log_softmax(a, -1)), data)


def test_layer_norm_normalises_last_axis():
    data = RNG.standard_normal((4, 6)) * 5 + 2
    out = layer_norm(Tensor(data), Tensor(np.ones(6)), Tensor(np.zeros(6)), 1e-12)
    np.testing.assert_allclose(out.data.mean(axis=-1), np.zeros(4), atol=1e-9)
    np.testing.assert_allclose(out.data.std(axis=-1), np.ones(4), rtol=1e-6)


def test_layer_norm_gradients():
    assert_gradients(
        lambda x, w, b: scalarize(layer_norm(x, w, b, 1e-5)),
        RNG.standard_normal((2, 3, 4)),
        RNG.standard_normal(4),
        RNG.standard_normal(4),
    )


def test_embedding_selects_rows_and_accumulates():
    table = RNG.standard_normal((4, 3))
    weight = Tensor(table, requires_grad=True)
    ids = np.array([[0, 0, 2]])
    out = embedding(weight, Tensor(ids))
    assert out.shape == (1, 3, 3)
    np.testing.assert_allclose(out.data[0, 2], table[2])
    out.backward()
    np.testing.assert_allclose(weight.grad[0], np.full(3, 2.0))
    np.testing.assert_allclose(weight.grad[1], np.zeros(3))


def test_embedding_rejects_bad_ids():
    weight = Tensor(np.zeros((4, 2)))
    with pytest.raises(IndexError):
        embedding(weight, np.array([4]))
    with pytest.raises(IndexError):
        embedding(weight, np.array([-1]))
    with pytest.raises(TypeError):
        embedding(weight, np.array([0.5]))


def test_where_replaces_masked_entries():
    data = RNG.standard_normal((2, 3, 3))
    mask = np.triu(np.ones((3, 3), dtype=np.uint8), k=1)
    x = Tensor(data, requires_grad=True)
    out = where(mask, x, -1e9)
    blocked = np.broadcast_to(mask.astype(bool), data.shape)
    assert (out.data[blocked] == -1e9).all()
    np.testing.assert_allclose(out.data[~blocked], data[~blocked])
    out.backward()
    assert (x.grad[blocked] == 0).all()
    assert (x.grad[~blocked] == 1).all()


def test_where_rejects_unbroadcastable_mask():
    with pytest.raises(ValueError):
        where(np.ones((4,), dtype=bool), Tensor(np.zeros((2, 3))), 0.0)


def test_gather_last_values_and_gradient():
    data = RNG.standard_normal((2, 3, 4))
    index = np.array([[0, 3, 1], [2, 2, 0]])
    picked = gather_last(Tensor(data), index)
    assert picked.shape == (2, 3)
    assert picked.data[0, 1] == data[0, 1, 3]
    assert picked.data[1, 0] == data[1, 0, 2]
    assert_gradients(lambda a: -gather_last(log_softmax(a, -1), index).mean(), data)


def test_gather_last_checks_index():
    x = Tensor(np.zeros((2, 3)))
    with pytest.raises(ValueError):
        gather_last(x, np.array([0, 1, 2]))
    with pytest.raises(IndexError):
        gather_last(x, np.array([0, 3]))


def test_varstore_zeros_and_sharing():
    store = VarStore(zeros=True)
    weight = store.prefix("layer").get("weight", (3, 2))
    assert weight.requires_grad
    assert weight.data.dtype == np.float32
    assert not weight.data.any()
    assert store.get("layer.weight", (3, 2)) is weight
    assert store.prefix("layer").get("weight", (3, 2), "ones") is weight


def test_varstore_shape_mismatch_and_unknown_init():
    store = VarStore()
    store.get("bias", 4)
    with pytest.raises(ValueError):
        store.get("bias", 5)
    with pytest.raises(ValueError):
        store.get("other", 2, "bogus")


def test_varstore_inits_and_seed():
    first = VarStore(seed=3)
    second = VarStore(seed=3)
    a = first.get("w", (5, 4))
    b = second.get("w", (5, 4))
    np.testing.assert_array_equal(a.data, b.data)
    assert a.data.std() > 0
    np.testing.assert_array_equal(first.get("g", 4, "ones").data, np.ones(4))
    np.testing.assert_array_equal(first.get("z", 4, "zeros").data, np.zeros(4))


def test_varstore_parameters_follow_prefix():
    store = VarStore(zeros=True)
    inner = store.prefix("enc")
    w = inner.get("w", (2, 2))
    b = inner.prefix("sub").get("b", 2)
    other = store.get("dec.w", (2, 2))
    assert store.parameters() == [w, b, other]
    assert inner.parameters() == [w, b]
    assert store.prefix("dec").parameters() == [other]