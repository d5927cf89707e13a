"""Training loop, AdamW optimiser and an inference demo for the transformer."""

from __future__ import annotations

import argparse
from collections.abc import Iterable

import numpy as np

from .autograd import Tensor, VarStore
from .model import (
    Transformer,
    TrainingConfig,
    create_look_ahead_mask,
    create_padding_mask,
    cross_entropy_loss,
    generate_dummy_data,
)


class AdamW:
    """Adam with decoupled weight decay."""

    def __init__(
        self,
        params: Iterable[Tensor],
        lr=0.001,
        beta1=0.9,
        beta2=0.999,
        eps=1e-8,
        weight_decay=0.01,
    ):
        self.params = list(params)
        self.lr = lr
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.weight_decay = weight_decay
        self._step_count = 0
        self._first = [np.zeros_like(p.data) for p in self.params]
        self._second = [np.zeros_like(p.data) for p in self.params]

    def step(self) -> None:
        """Update every parameter that holds a gradient."""
        self._step_count += 1
        bias1 = 1.0 - self.beta1**self._step_count
        bias2 = 1.0 - self.beta2**self._step_count
        decay = 1.0 - self.lr * self.weight_decay
        for index, param in enumerate(self.params):
            grad = param.grad
            if grad is None:
                continue
            m = self._first[index] * self.beta1 + grad * (1.0 - self.beta1)
            v = self._second[index] * self.beta2 + grad * grad * (1.0 - self.beta2)
            self._first[index] = m
            self._second[index] = v
            m_hat = m / bias1
            v_hat = v / bias2
            updated = param.data * decay - self.lr * m_hat / (np.sqrt(v_hat) + self.eps)
            param.data = updated.astype(param.data.dtype, copy=False)


def train_transformer(
    config: TrainingConfig,
    num_blocks=6,
    d_model=512,
    h=8,
    d_ff=2048,
    num_batches=10,
) -> list[float]:
    """Train a fresh transformer on synthetic data and return each epoch's mean loss."""
    if num_batches < 1:
        raise ValueError("num_batches must be at least 1")
    print("Starting transformer training...")

    store = VarStore()
    transformer = Transformer(
        num_blocks,
        d_model,
        h,
        d_ff,
        config.vocab_size,
        config.vocab_size,
        config.max_seq_len,
        store,
    )
    params = store.parameters()
    optimizer = AdamW(params, lr=config.learning_rate)

    epoch_losses: list[float] = []
    for epoch in range(config.num_epochs):
        total_loss = 0.0
        for batch in range(num_batches):
            encoder_input, decoder_input, targets = generate_dummy_data(
                config.batch_size, config.max_seq_len, config.vocab_size
            )
            look_ahead_mask = create_look_ahead_mask(config.max_seq_len)
            padding_mask = create_padding_mask(encoder_input, 0)

            logits = transformer.forward(
                encoder_input, decoder_input, look_ahead_mask, padding_mask
            )
            loss = cross_entropy_loss(logits, targets)

            for param in params:
                param.zero_grad()
            loss.backward()
            optimizer.step()

            loss_val = float(loss.item())
            total_loss += loss_val
            if batch % 5 == 0:
                print(f"Epoch {epoch + 1}, Batch {batch + 1}, Loss: {loss_val:.4f}")

        avg_loss = total_loss / num_batches
        epoch_losses.append(avg_loss)
        print(f"Epoch {epoch + 1} completed. Average Loss: {avg_loss:.4f}")

    print("Training completed!")
    return epoch_losses


def demo_inference(transformer: Transformer, seq_len=20) -> Tensor:
    """Run one synthetic sequence through ``transformer`` and report the result."""
    print("\nRunning inference demo...")
    config = TrainingConfig()
    encoder_input, decoder_input, _ = generate_dummy_data(1, seq_len, config.vocab_size)
    look_ahead_mask = create_look_ahead_mask(seq_len)
    padding_mask = create_padding_mask(encoder_input, 0)

    output = transformer.forward(encoder_input, decoder_input, look_ahead_mask, padding_mask)

    print(f"Input shape: {encoder_input.shape}")
    print(f"Output shape: {output.shape}")
    print(f"Output logits (first 5 values): {output.data[0, 0, :5].tolist()}")
    return output


def _parse_args(argv):
    defaults = TrainingConfig(batch_size=4, num_epochs=3, warmup_steps=1000, max_seq_len=64, vocab_size=1000)
    parser = argparse.ArgumentParser(description="Train a small encoder-decoder transformer.")
    parser.add_argument("--learning-rate", type=float, default=defaults.learning_rate)
    parser.add_argument("--batch-size", type=int, default=defaults.batch_size)
    parser.add_argument("--num-epochs", type=int, default=defaults.num_epochs)
    parser.add_argument("--warmup-steps", type=int, default=defaults.warmup_steps)
    parser.add_argument("--max-seq-len", type=int, default=defaults.max_seq_len)
    parser.add_argument("--vocab-size", type=int, default=defaults.vocab_size)
    parser.add_argument("--num-blocks", type=int, default=2)
    parser.add_argument("--train-blocks", type=int, default=6)
    parser.add_argument("--d-model", type=int, default=512)
    parser.add_argument("--heads", type=int, default=8)
    parser.add_argument("--d-ff", type=int, default=2048)
    parser.add_argument("--num-batches", type=int, default=10)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Run the inference demo, a training run, then the demo again."""
    args = _parse_args(argv)
    print("Device setup. Using: Cpu")

    config = TrainingConfig(
        learning_rate=args.learning_rate,
        batch_size=args.batch_size,
        num_epochs=args.num_epochs,
        warmup_steps=args.warmup_steps,
        max_seq_len=args.max_seq_len,
        vocab_size=args.vocab_size,
    )
    print(f"Training configuration: {config}")

    transformer = Transformer(
        args.num_blocks,
        args.d_model,
        args.heads,
        args.d_ff,
        config.vocab_size,
        config.vocab_size,
        config.max_seq_len,
        VarStore(),
    )

    demo_inference(transformer)
    train_transformer(
        config,
        num_blocks=args.train_blocks,
        d_model=args.d_model,
        h=args.heads,
        d_ff=args.d_ff,
        num_batches=args.num_batches,
    )
    demo_inference(transformer)
    return 0