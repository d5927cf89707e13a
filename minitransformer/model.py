"""Encoder–decoder transformer layers, masks, loss and synthetic data."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from .autograd import (
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

_MASK_VALUE = -1e9


def _as_tensor(value) -> Tensor:
    return value if isinstance(value, Tensor) else Tensor(value)


class InputEmbedding:
    """A learned lookup table from token ids to ``d_model``-sized vectors."""

    def __init__(self, vocab_size, d_model, vb: VarStore):
        self.weight = vb.get("weight", (vocab_size, d_model), init="normal")

    def forward(self, x) -> Tensor:
        return embedding(self.weight, x)


def positional_encoding(seq_len, d_model) -> Tensor:
    """Sinusoidal position encodings of shape ``(seq_len, d_model)``."""
    pe = np.zeros((seq_len, d_model), dtype=np.float32)
    half = d_model // 2
    if seq_len and half:
        positions = np.arange(seq_len, dtype=np.float32)[:, None]
        steps = np.arange(half, dtype=np.float32)
        divisors = np.power(np.float32(10000.0), 2.0 * steps / np.float32(d_model))
        angles = positions / divisors[None, :]
        pe[:, 0 : 2 * half : 2] = np.sin(angles)
        pe[:, 1 : 2 * half : 2] = np.cos(angles)
    return Tensor(pe)


def scaled_dot_product_attention(query, key, value, mask=None) -> Tensor:
    """Softmax(Q Kᵀ / sqrt(d_k)) V, with masked positions pushed to -1e9."""
    d_k = query.shape[-1]
    scale = 1.0 / math.sqrt(d_k)
    scores = query.matmul(key.transpose(-2, -1)) * scale
    if mask is not None:
        scores = where(mask, scores, _MASK_VALUE)
    weights = softmax(scores, axis=-1)
    return weights.matmul(value)


class Linear:
    """An affine map ``x @ weight + bias`` with weight of shape ``(in_dim, out_dim)``."""

    def __init__(self, in_dim, out_dim, vb: VarStore):
        self.weight = vb.get("weight", (in_dim, out_dim), init="kaiming")
        self.bias = vb.get("bias", out_dim, init="zeros")

    def forward(self, x) -> Tensor:
        x = _as_tensor(x)
        if x.ndim == 3:
            batch, seq_len, features = x.shape
            out = x.reshape(batch * seq_len, features).matmul(self.weight) + self.bias
            return out.reshape(batch, seq_len, out.shape[-1])
        return x.matmul(self.weight) + self.bias


class MultiHeadAttention:
    """Attention split over ``h`` heads of size ``d_model // h``."""

    def __init__(self, h, d_model, vb: VarStore):
        if h <= 0 or d_model % h != 0:
            raise ValueError("d_model must be divisible by h")
        self.h = h
        self.d_model = d_model
        self.d_k = d_model // h
        self.w_q = Linear(d_model, d_model, vb.prefix("w_q"))
        self.w_k = Linear(d_model, d_model, vb.prefix("w_k"))
        self.w_v = Linear(d_model, d_model, vb.prefix("w_v"))
        self.w_o = Linear(d_model, d_model, vb.prefix("w_o"))

    def _split(self, x: Tensor, batch: int, seq_len: int) -> Tensor:
        return x.reshape(batch, seq_len, self.h, self.d_k).transpose(1, 2)

    def forward(self, query, key, value, mask=None) -> Tensor:
        batch, seq_len_q = query.shape[0], query.shape[1]
        seq_len_k = key.shape[1]
        q = self._split(self.w_q.forward(query), batch, seq_len_q)
        k = self._split(self.w_k.forward(key), batch, seq_len_k)
        v = self._split(self.w_v.forward(value), batch, seq_len_k)
        attended = scaled_dot_product_attention(q, k, v, mask)
        joined = attended.transpose(1, 2).reshape(batch, seq_len_q, self.d_model)
        return self.w_o.forward(joined)


class PositionwiseFeedForward:
    """Two linear layers with a ReLU between them."""

    def __init__(self, d_model, d_ff, vb: VarStore):
        self.linear1 = Linear(d_model, d_ff, vb.prefix("linear1"))
        self.linear2 = Linear(d_ff, d_model, vb.prefix("linear2"))

    def forward(self, x) -> Tensor:
        return self.linear2.forward(relu(self.linear1.forward(x)))


class LayerNormalization:
    """Layer normalisation over the last axis with a learned scale and shift."""

    eps = 1e-5

    def __init__(self, d_model, vb: VarStore):
        self.weight = vb.get("weight", d_model, init="ones")
        self.bias = vb.get("bias", d_model, init="zeros")

    def forward(self, x) -> Tensor:
        return layer_norm(_as_tensor(x), self.weight, self.bias, self.eps)


class EncoderBlock:
    """Self-attention and feed-forward sublayers, each followed by add & norm."""

    def __init__(self, d_model, h, d_ff, vb: VarStore):
        self.attention = MultiHeadAttention(h, d_model, vb.prefix("attention"))
        self.feed_forward = PositionwiseFeedForward(d_model, d_ff, vb.prefix("feed_forward"))
        self.norm1 = LayerNormalization(d_model, vb.prefix("norm1"))
        self.norm2 = LayerNormalization(d_model, vb.prefix("norm2"))

    def forward(self, x, mask=None) -> Tensor:
        attended = self.attention.forward(x, x, x, mask)
        normed = self.norm1.forward(x + attended)
        return self.norm2.forward(normed + self.feed_forward.forward(normed))


class DecoderBlock:
    """Masked self-attention, cross-attention and feed-forward sublayers."""

    def __init__(self, d_model, h, d_ff, vb: VarStore):
        self.masked_attention = MultiHeadAttention(h, d_model, vb.prefix("masked_attention"))
        self.cross_attention = MultiHeadAttention(h, d_model, vb.prefix("cross_attention"))
        self.feed_forward = PositionwiseFeedForward(d_model, d_ff, vb.prefix("feed_forward"))
        self.norm1 = LayerNormalization(d_model, vb.prefix("norm1"))
        self.norm2 = LayerNormalization(d_model, vb.prefix("norm2"))
        self.norm3 = LayerNormalization(d_model, vb.prefix("norm3"))

    def forward(self, x, encoder_output, look_ahead_mask=None, padding_mask=None) -> Tensor:
        attended = self.masked_attention.forward(x, x, x, look_ahead_mask)
        normed1 = self.norm1.forward(x + attended)
        crossed = self.cross_attention.forward(
            normed1, encoder_output, encoder_output, padding_mask
        )
        normed2 = self.norm2.forward(normed1 + crossed)
        return self.norm3.forward(normed2 + self.feed_forward.forward(normed2))


class Transformer:
    """A stack of encoder and decoder blocks followed by a vocabulary projection."""

    def __init__(
        self,
        num_blocks,
        d_model,
        h,
        d_ff,
        input_vocab_size,
        output_vocab_size,
        max_seq_len,
        vb: VarStore,
    ):
        self.encoder_blocks = [
            EncoderBlock(d_model, h, d_ff, vb.prefix(f"encoder.{i}")) for i in range(num_blocks)
        ]
        self.decoder_blocks = [
            DecoderBlock(d_model, h, d_ff, vb.prefix(f"decoder.{i}")) for i in range(num_blocks)
        ]
        self.encoder_embedding = InputEmbedding(
            input_vocab_size, d_model, vb.prefix("encoder_embedding")
        )
        self.decoder_embedding = InputEmbedding(
            output_vocab_size, d_model, vb.prefix("decoder_embedding")
        )
        self.output_linear = Linear(d_model, output_vocab_size, vb.prefix("output_linear"))
        self.max_seq_len = max_seq_len
        self.d_model = d_model

    def forward(
        self, encoder_input, decoder_input, look_ahead_mask=None, padding_mask=None
    ) -> Tensor:
        encoder_input = _as_tensor(encoder_input)
        decoder_input = _as_tensor(decoder_input)

        encoded = self.encoder_embedding.forward(encoder_input)
        encoded = encoded + positional_encoding(encoder_input.shape[1], self.d_model)
        for block in self.encoder_blocks:
            encoded = block.forward(encoded, padding_mask)

        decoded = self.decoder_embedding.forward(decoder_input)
        decoded = decoded + positional_encoding(decoder_input.shape[1], self.d_model)
        for block in self.decoder_blocks:
            decoded = block.forward(decoded, encoded, look_ahead_mask, padding_mask)

        return self.output_linear.forward(decoded)


def cross_entropy_loss(logits, targets) -> Tensor:
    """Mean negative log-likelihood of ``targets`` under ``logits``."""
    picked = gather_last(log_softmax(logits, axis=-1), targets)
    return (-picked).mean()


def create_look_ahead_mask(size) -> Tensor:
    """A ``(size, size)`` mask that is set above the diagonal, hiding future positions."""
    return Tensor(np.triu(np.ones((size, size), dtype=np.uint8), k=1))


def create_padding_mask(seq, pad_token=0) -> Tensor:
    """A mask set where ``seq`` equals ``pad_token``.

    Two axes are inserted before the last one so the mask broadcasts against
    attention scores of shape ``(batch, heads, seq_q, seq_k)``.
    """
    data = seq.data if isinstance(seq, Tensor) else np.asarray(seq)
    mask = (data == pad_token).astype(np.uint8)
    return Tensor(mask[..., None, None, :])


@dataclass
class TrainingConfig:
    """Hyper-parameters of a training run."""

    learning_rate: float = 1e-4
    batch_size: int = 8
    num_epochs: int = 10
    warmup_steps: int = 4000
    max_seq_len: int = 128
    vocab_size: int = 10000


def generate_dummy_data(batch_size, seq_len, vocab_size) -> tuple[Tensor, Tensor, Tensor]:
    """Deterministic encoder inputs, decoder inputs and targets for smoke training."""
    flat = np.arange(batch_size * seq_len, dtype=np.int64)
    encoder = (flat % vocab_size + 1).astype(np.uint32).reshape(batch_size, seq_len)
    decoder = ((flat + 1) % vocab_size + 1).astype(np.uint32).reshape(batch_size, seq_len)

    rows = np.arange(batch_size, dtype=np.int64)[:, None]
    cols = np.arange(seq_len, dtype=np.int64)[None, :]
    targets = ((rows + cols + 1) % vocab_size).astype(np.uint32)
    if seq_len:
        targets[:, -1] = 0
    return Tensor(encoder), Tensor(decoder), Tensor(targets)