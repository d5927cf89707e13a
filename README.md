# minitransformer

minitransformer is an encoder-decoder transformer built on numpy. It has its
own small reverse-mode autograd engine and an AdamW optimiser. You can build
and train the model with no other deep-learning framework.

## Installation

```
pip install .
```

To install the test dependencies and run the tests:

```
pip install ".[test]"
pytest
```

## Command line

```
minitransformer
```

The command runs these steps in order:

1. It prints the device line (`Cpu`) and the training configuration.
2. It builds a transformer and runs one inference pass on a synthetic sequence of 20 tokens. It prints the input shape, the output shape and the first five logits.
3. It creates a second transformer and trains it on synthetic token sequences. During training it prints the loss every fifth batch and the average loss for each epoch.
4. It runs the inference pass again on the model from step 2. Training in step 3 does not change that model, so this pass uses the untrained model.

### Options

| Option | Default | Meaning |
| --- | --- | --- |
| `--learning-rate` | `0.0001` | AdamW learning rate |
| `--batch-size` | `4` | sequences per batch |
| `--num-epochs` | `3` | training epochs |
| `--warmup-steps` | `1000` | stored in the configuration and printed; no code uses it |
| `--max-seq-len` | `64` | sequence length used in training |
| `--vocab-size` | `1000` | size of the input and output vocabularies |
| `--num-blocks` | `2` | encoder/decoder blocks in the model used for inference |
| `--train-blocks` | `6` | encoder/decoder blocks in the model that is trained |
| `--d-model` | `512` | model width |
| `--heads` | `8` | attention heads; must divide `--d-model` |
| `--d-ff` | `2048` | width of the feed-forward layer |
| `--num-batches` | `10` | batches per epoch |

All computation runs on the CPU through numpy, so the default sizes are slow.
For a quick run, use smaller sizes:

```
minitransformer --d-model 64 --heads 4 --d-ff 128 --train-blocks 1 --num-epochs 1 --num-batches 2
```

## Library use

```python
from minitransformer.autograd import VarStore
from minitransformer.model import (
    Transformer,
    TrainingConfig,
    generate_dummy_data,
    create_look_ahead_mask,
    create_padding_mask,
    cross_entropy_loss,
)

config = TrainingConfig()
vb = VarStore(zeros=False, seed=0)
model = Transformer(2, 128, 8, 512, config.vocab_size, config.vocab_size,
                    config.max_seq_len, vb)

enc, dec, targets = generate_dummy_data(2, 10, config.vocab_size)
logits = model.forward(enc, dec, create_look_ahead_mask(10),
                       create_padding_mask(enc, 0))
loss = cross_entropy_loss(logits, targets)
loss.backward()
```

The logits have the shape `(batch, seq_len, vocab_size)`. The masks are set
(non-zero) at the positions that attention must ignore:

- The look-ahead mask has the shape `(size, size)`. It is set above the diagonal.
- The padding mask has the shape `(batch, 1, 1, seq_len)`. It is set where a token equals the pad token.

To train, call `minitransformer.train.train_transformer(config, ...)`. It builds
a fresh model, optimises it with `AdamW` over `VarStore.parameters()`, and
returns the mean loss of each epoch. `minitransformer.train.demo_inference(model)`
runs one synthetic sequence through a given model and returns the logits.

### Modules

- `minitransformer.autograd` holds the following:
  - `Tensor`: a numpy array that records its operations and supports `backward()`.
  - `VarStore`: a named registry of trainable tensors. You can nest names with `prefix()` and get the tensors back with `parameters()`.
  - The differentiable operations `softmax`, `log_softmax`, `relu`, `layer_norm`, `embedding`, `where` and `gather_last`.
- `minitransformer.model` holds the model parts:
  - `InputEmbedding`
  - `positional_encoding`
  - `scaled_dot_product_attention`
  - `Linear`
  - `MultiHeadAttention`
  - `PositionwiseFeedForward`
  - `LayerNormalization`
  - `EncoderBlock`
  - `DecoderBlock`
  - `Transformer`

  It also holds `cross_entropy_loss`, the two mask builders, `TrainingConfig` and `generate_dummy_data`.
- `minitransformer.train` holds `AdamW`, `train_transformer`, `demo_inference` and the command's `main`.

## What it does not do

- It does not save or load model weights.
- It has no tokenizer and does not read any dataset. Training uses only the synthetic data from `generate_dummy_data`.
- It does not decode text or generate tokens. It computes logits only.
- It does not use a learning-rate warm-up schedule.
- It runs only on the CPU.