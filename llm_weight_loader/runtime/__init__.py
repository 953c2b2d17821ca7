# llm_weight_loader/runtime/__init__.py

from .quantized_layers import QuantizedLinear, QuantizedEmbedding, to_quantized
from .patcher import quantize_model
from .parameters import ModuleSnapshot, apply_parameters, flatten_tree, unflatten_tree, verify_parameters

__all__ = [
    "QuantizedLinear",
    "QuantizedEmbedding",
    "to_quantized",
    "quantize_model",
    "ModuleSnapshot",
    "apply_parameters",
    "flatten_tree",
    "unflatten_tree",
    "verify_parameters",
]
