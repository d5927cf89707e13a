"""Encoder-decoder transformer, AdamW training loop and a small numpy autograd engine."""

__version__ = "0.1.0"
__all__ = ["autograd", "model", "train"]