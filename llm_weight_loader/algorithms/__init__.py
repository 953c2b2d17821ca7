"""
Algoritmos de baixo nível:

- Quantização afim por grupos (códigos empacotados em int32 + scales/biases).
"""

from .quantization import GroupQuantizer, QuantizedTensor, pack_codes, unpack_codes

__all__ = [
    "GroupQuantizer",
    "QuantizedTensor",
    "pack_codes",
    "unpack_codes",
]
