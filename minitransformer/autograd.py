"""A small reverse-mode automatic differentiation engine on top of numpy."""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Iterable, Sequence

import numpy as np

_BackwardFn = Callable[[np.ndarray], Sequence["np.ndarray | None"]]


def _unbroadcast(grad: np.ndarray, shape: tuple[int, ...]) -> np.ndarray:
    """Sum a broadcast gradient back down to ``shape``."""
    while grad.ndim > len(shape):
        grad = grad.sum(axis=0)
    for axis, size in enumerate(shape):
        if size == 1 and grad.shape[axis] != 1:
            grad = grad.sum(axis=axis, keepdims=True)
    return grad


def _raw(value) -> np.ndarray:
    return value.data if isinstance(value, Tensor) else np.asarray(value)


class Tensor:
    """An n-dimensional array that records the operations applied to it."""

    def __init__(self, data, requires_grad=False):
        arr = np.asarray(data.data if isinstance(data, Tensor) else data)
        if requires_grad and arr.dtype.kind != "f":
            raise TypeError("only floating point tensors can require gradients")
        self.data: np.ndarray = arr
        self.requires_grad: bool = bool(requires_grad)
        self.grad: np.ndarray | None = None
        self._parents: tuple[Tensor, ...] = ()
        self._backward: _BackwardFn | None = None

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape

    @property
    def ndim(self) -> int:
        return self.data.ndim

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape}, dtype={self.data.dtype}, requires_grad={self.requires_grad})"

    def backward(self) -> None:
        """Propagate gradients from this tensor to every leaf that requires them."""
        if not self.requires_grad:
            raise RuntimeError("tensor does not require gradients")
        order = self._topological_order()
        pending: dict[int, np.ndarray] = {id(self): np.ones_like(self.data)}
        for node in reversed(order):
            grad = pending.pop(id(node), None)
            if grad is None:
                continue
            if node._backward is None:
                grad = grad.astype(node.data.dtype, copy=False)
                node.grad = grad.copy() if node.grad is None else node.grad + grad
                continue
            for parent, parent_grad in zip(node._parents, node._backward(grad)):
                if parent_grad is None or not parent.requires_grad:
                    continue
                key = id(parent)
                pending[key] = parent_grad if key not in pending else pending[key] + parent_grad

    def _topological_order(self) -> list[Tensor]:
        order: list[Tensor] = []
        visited: set[int] = set()
        stack: list[tuple[Tensor, bool]] = [(self, False)]
        while stack:
            node, finished = stack.pop()
            if finished:
                order.append(node)
                continue
            if id(node) in visited:
                continue
            visited.add(id(node))
            stack.append((node, True))
            for parent in node._parents:
                if parent.requires_grad and id(parent) not in visited:
                    stack.append((parent, False))
        return order

    def zero_grad(self) -> None:
        """Forget any accumulated gradient."""
        self.grad = None

    def _coerce(self, other) -> Tensor:
        if isinstance(other, Tensor):
            return other
        if self.data.dtype.kind == "f":
            return Tensor(np.asarray(other, dtype=self.data.dtype))
        return Tensor(other)

    def matmul(self, other) -> Tensor:
        other = self._coerce(other)
        a, b = self.data, other.data
        if a.ndim < 2 or b.ndim < 2:
            raise ValueError("matmul needs operands with at least two dimensions")

        def backward(grad):
            grad_a = _unbroadcast(grad @ np.swapaxes(b, -1, -2), a.shape)
            grad_b = _unbroadcast(np.swapaxes(a, -1, -2) @ grad, b.shape)
            return grad_a, grad_b

        return _result(np.matmul(a, b), (self, other), backward)

    def __matmul__(self, other) -> Tensor:
        return self.matmul(other)

    def __add__(self, other) -> Tensor:
        other = self._coerce(other)
        a_shape, b_shape = self.shape, other.shape

        def backward(grad):
            return _unbroadcast(grad, a_shape), _unbroadcast(grad, b_shape)

        return _result(self.data + other.data, (self, other), backward)

    def __radd__(self, other) -> Tensor:
        return self + other

    def __sub__(self, other) -> Tensor:
        return self + (-self._coerce(other))

    def __rsub__(self, other) -> Tensor:
        return self._coerce(other) + (-self)

    def __mul__(self, other) -> Tensor:
        other = self._coerce(other)
        a, b = self.data, other.data

        def backward(grad):
            return _unbroadcast(grad * b, a.shape), _unbroadcast(grad * a, b.shape)

        return _result(a * b, (self, other), backward)

    def __rmul__(self, other) -> Tensor:
        return self * other

    def __neg__(self) -> Tensor:
        return _result(-self.data, (self,), lambda grad: (-grad,))

    def reshape(self, *args) -> Tensor:
        shape = tuple(args[0]) if len(args) == 1 and isinstance(args[0], (tuple, list)) else args
        original = self.shape
        return _result(self.data.reshape(shape), (self,), lambda grad: (grad.reshape(original),))

    def transpose(self, dim0, dim1) -> Tensor:
        return _result(
            np.swapaxes(self.data, dim0, dim1),
            (self,),
            lambda grad: (np.swapaxes(grad, dim0, dim1),),
        )

    def mean(self) -> Tensor:
        """Mean over every element, as a zero-dimensional tensor."""
        size, shape = self.data.size, self.shape

        def backward(grad):
            return (np.full(shape, grad / size, dtype=grad.dtype),)

        return _result(np.asarray(self.data.mean()), (self,), backward)

    def maximum(self, other) -> Tensor:
        other = self._coerce(other)
        a, b = self.data, other.data

        def backward(grad):
            take_a = (a >= b).astype(grad.dtype)
            take_b = (b >= a).astype(grad.dtype)
            share = np.maximum(take_a + take_b, 1)
            return (
                _unbroadcast(grad * take_a / share, a.shape),
                _unbroadcast(grad * take_b / share, b.shape),
            )

        return _result(np.maximum(a, b), (self, other), backward)

    def item(self):
        """The single value held by a one-element tensor."""
        if self.data.size != 1:
            raise ValueError(f"item() needs a tensor with one element, got shape {self.shape}")
        return self.data.item()


def _result(data, parents: tuple[Tensor, ...], backward: _BackwardFn) -> Tensor:
    out = Tensor(data)
    if any(parent.requires_grad for parent in parents):
        out.requires_grad = True
        out._parents = parents
        out._backward = backward
    return out


class VarStore:
    """A named, shared collection of trainable tensors."""

    _INITS = ("kaiming", "normal", "ones", "zeros")

    def __init__(self, zeros=False, seed=None):
        self._vars: dict[str, Tensor] = {}
        self._rng = np.random.default_rng(seed)
        self._zeros = zeros
        self._prefix = ""

    def _join(self, name: str) -> str:
        return f"{self._prefix}.{name}" if self._prefix else name

    def prefix(self, name) -> VarStore:
        """A view of the same store whose names are nested under ``name``."""
        child = copy.copy(self)
        child._prefix = self._join(name)
        return child

    def get(self, name, shape, init="kaiming") -> Tensor:
        """Return the variable ``name``, creating it with ``init`` on first use."""
        shape = (shape,) if isinstance(shape, int) else tuple(shape)
        full_name = self._join(name)
        existing = self._vars.get(full_name)
        if existing is not None:
            if existing.shape != shape:
                raise ValueError(
                    f"variable {full_name!r} has shape {existing.shape}, requested {shape}"
                )
            return existing
        if init not in self._INITS:
            raise ValueError(f"unknown initialisation {init!r}")
        tensor = Tensor(self._initial(shape, init).astype(np.float32), requires_grad=True)
        self._vars[full_name] = tensor
        return tensor

    def _initial(self, shape: tuple[int, ...], init: str) -> np.ndarray:
        if self._zeros or init == "zeros":
            return np.zeros(shape)
        if init == "ones":
            return np.ones(shape)
        if init == "normal":
            return self._rng.standard_normal(shape)
        return self._rng.standard_normal(shape) * math.sqrt(2.0 / _fan_in(shape))

    def parameters(self) -> list[Tensor]:
        """Every variable under this store's prefix, in creation order."""
        if not self._prefix:
            return list(self._vars.values())
        nested = self._prefix + "."
        return [
            tensor
            for name, tensor in self._vars.items()
            if name == self._prefix or name.startswith(nested)
        ]


def _fan_in(shape: tuple[int, ...]) -> int:
    if not shape:
        return 1
    if len(shape) == 1:
        return max(shape[0], 1)
    receptive = math.prod(shape[2:])
    return max(shape[1] * receptive, 1)


def softmax(x, axis=-1) -> Tensor:
    shifted = x.data - x.data.max(axis=axis, keepdims=True)
    exp = np.exp(shifted)
    out = exp / exp.sum(axis=axis, keepdims=True)

    def backward(grad):
        return (out * (grad - (grad * out).sum(axis=axis, keepdims=True)),)

    return _result(out, (x,), backward)


def log_softmax(x, axis=-1) -> Tensor:
    shifted = x.data - x.data.max(axis=axis, keepdims=True)
    out = shifted - np.log(np.exp(shifted).sum(axis=axis, keepdims=True))

    def backward(grad):
        return (grad - np.exp(out) * grad.sum(axis=axis, keepdims=True),)

    return _result(out, (x,), backward)


def relu(x) -> Tensor:
    return x.maximum(Tensor(np.zeros_like(x.data)))


def layer_norm(x, weight, bias, eps=1e-5) -> Tensor:
    """Normalise over the last axis, then scale by ``weight`` and shift by ``bias``."""
    data = x.data
    centered = data - data.mean(axis=-1, keepdims=True)
    inv_std = 1.0 / np.sqrt((centered**2).mean(axis=-1, keepdims=True) + eps)
    normed = centered * inv_std
    out = normed * weight.data + bias.data

    def backward(grad):
        n = data.shape[-1]
        grad_normed = grad * weight.data
        grad_x = (inv_std / n) * (
            n * grad_normed
            - grad_normed.sum(axis=-1, keepdims=True)
            - normed * (grad_normed * normed).sum(axis=-1, keepdims=True)
        )
        leading = tuple(range(grad.ndim - 1))
        return grad_x, (grad * normed).sum(axis=leading), grad.sum(axis=leading)

    return _result(out, (x, weight, bias), backward)


def _indices(ids, limit: int) -> np.ndarray:
    idx = _raw(ids)
    if idx.dtype.kind not in "iu":
        raise TypeError("indices must be integers")
    if idx.size and (idx.min() < 0 or idx.max() >= limit):
        raise IndexError(f"index out of range for dimension of size {limit}")
    return idx.astype(np.intp)


def embedding(weight, ids) -> Tensor:
    """Rows of ``weight`` selected by the integer ``ids``."""
    idx = _indices(ids, weight.shape[0])

    def backward(grad):
        grad_weight = np.zeros_like(weight.data, dtype=grad.dtype)
        np.add.at(grad_weight, idx, grad)
        return (grad_weight,)

    return _result(weight.data[idx], (weight,), backward)


def where(mask, x, value) -> Tensor:
    """Replace the entries of ``x`` with ``value`` wherever ``mask`` is set."""
    selected = np.broadcast_to(_raw(mask).astype(bool), x.shape)
    out = np.where(selected, np.asarray(value, dtype=x.data.dtype), x.data)

    def backward(grad):
        return (np.where(selected, np.zeros_like(grad), grad),)

    return _result(out, (x,), backward)


def gather_last(x, index) -> Tensor:
    """Pick one entry along the last axis of ``x`` for each position of ``index``."""
    idx = _indices(index, x.shape[-1])
    if idx.shape != x.shape[:-1]:
        raise ValueError(f"index shape {idx.shape} does not match {x.shape[:-1]}")
    expanded = idx[..., None]
    picked = np.take_along_axis(x.data, expanded, axis=-1)[..., 0]

    def backward(grad):
        grad_x = np.zeros_like(x.data, dtype=grad.dtype)
        np.put_along_axis(grad_x, expanded, grad[..., None], axis=-1)
        return (grad_x,)

    return _result(picked, (x,), backward)


def _iter_parameters(stores: Iterable[VarStore]) -> list[Tensor]:
    return [tensor for store in stores for tensor in store.parameters()]