# Inference-engine adapters
#
# Each adapter implements the engine primitives the controller needs:
#   - Loading / releasing a model and its decoding context
#   - Tokenize / detokenize, end-of-generation detection
#   - Single decode steps with status codes, last-position logits
#
# Engine bindings are imported lazily, so importing this package does not
# require llama-cpp-python or transformers to be installed.

from .base import DECODE_ABORTED, DECODE_CONTEXT_FULL, DECODE_OK, BaseAdapter

__all__ = ["BaseAdapter", "DECODE_OK", "DECODE_CONTEXT_FULL", "DECODE_ABORTED"]
