# llm_weight_loader/runtime/quantized_layers.py

from __future__ import annotations
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from llm_weight_loader.algorithms import GroupQuantizer, QuantizedTensor


class _QuantizedSlots(nn.Module):
    """
    Base comum: buffers `weight` (códigos empacotados), `scales` e `biases`,
    mesmos nomes usados nos checkpoints pré-quantizados.
    """

    def __init__(
        self,
        rows: int,
        cols: int,
        group_size: int,
        bits: int,
        dtype: torch.dtype,
        device: Optional[torch.device],
    ):
        super().__init__()
        self.quantizer = GroupQuantizer(group_size=group_size, bits=bits)
        self.quantizer.check_shape(cols)

        self.register_buffer("weight", torch.zeros(rows, cols * bits // 32, dtype=torch.int32, device=device))
        self.register_buffer("scales", torch.zeros(rows, cols // group_size, dtype=dtype, device=device))
        self.register_buffer("biases", torch.zeros(rows, cols // group_size, dtype=dtype, device=device))

    @property
    def group_size(self) -> int:
        return self.quantizer.group_size

    @property
    def bits(self) -> int:
        return self.quantizer.bits

    def _load_quantized(self, qt: QuantizedTensor) -> None:
        self.weight = qt.weight
        self.scales = qt.scales
        self.biases = qt.biases

    def _dequantize(self, index: Optional[torch.Tensor] = None) -> torch.Tensor:
        weight = self.weight
        # Checkpoints MLX guardam os códigos como uint32
        if weight.dtype != torch.int32:
            weight = weight.view(torch.int32)
        if index is None:
            qt = QuantizedTensor(weight, self.scales, self.biases, self.group_size, self.bits)
        else:
            qt = QuantizedTensor(
                weight[index], self.scales[index], self.biases[index], self.group_size, self.bits
            )
        return self.quantizer.dequantize(qt)


class QuantizedLinear(_QuantizedSlots):
    """
    nn.Linear com peso quantizado por grupos.
    Dequantiza on-the-fly no forward.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        group_size: int = 64,
        bits: int = 4,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ):
        super().__init__(out_features, in_features, group_size, bits, dtype, device)
        self.in_features = in_features
        self.out_features = out_features

        if bias:
            self.bias = nn.Parameter(torch.zeros(out_features, dtype=dtype, device=device))
        else:
            self.register_parameter("bias", None)

    @classmethod
    def from_float(cls, linear: nn.Linear, group_size: int = 64, bits: int = 4) -> "QuantizedLinear":
        weight = linear.weight
        layer = cls(
            linear.in_features,
            linear.out_features,
            bias=linear.bias is not None,
            group_size=group_size,
            bits=bits,
            dtype=weight.dtype,
            device=weight.device,
        )
        # No device meta só existem shapes: os valores virão do checkpoint
        if not weight.is_meta:
            with torch.no_grad():
                layer._load_quantized(layer.quantizer.quantize(weight.detach()))
                if linear.bias is not None:
                    layer.bias.copy_(linear.bias)
        return layer

    @torch.no_grad()
    def materialize_weight(self) -> torch.Tensor:
        return self._dequantize()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        w = self._dequantize()
        return F.linear(x.to(w.dtype), w, self.bias)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"bias={self.bias is not None}, group_size={self.group_size}, bits={self.bits}"
        )


class QuantizedEmbedding(_QuantizedSlots):
    """
    nn.Embedding com tabela quantizada por grupos.
    Só as linhas indexadas são dequantizadas.
    """

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        group_size: int = 64,
        bits: int = 4,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ):
        super().__init__(num_embeddings, embedding_dim, group_size, bits, dtype, device)
        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim

    @classmethod
    def from_float(cls, embedding: nn.Embedding, group_size: int = 64, bits: int = 4) -> "QuantizedEmbedding":
        weight = embedding.weight
        layer = cls(
            embedding.num_embeddings,
            embedding.embedding_dim,
            group_size=group_size,
            bits=bits,
            dtype=weight.dtype,
            device=weight.device,
        )
        if not weight.is_meta:
            with torch.no_grad():
                layer._load_quantized(layer.quantizer.quantize(weight.detach()))
        return layer

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        flat = input_ids.reshape(-1)
        rows = self._dequantize(flat)
        return rows.reshape(*input_ids.shape, self.embedding_dim)

    def extra_repr(self) -> str:
        return (
            f"{self.num_embeddings}, {self.embedding_dim}, "
            f"group_size={self.group_size}, bits={self.bits}"
        )


def to_quantized(module: nn.Module, group_size: int, bits: int) -> nn.Module:
    """Versão quantizada de um nn.Linear / nn.Embedding."""
    if isinstance(module, nn.Linear):
        return QuantizedLinear.from_float(module, group_size=group_size, bits=bits)
    if isinstance(module, nn.Embedding):
        return QuantizedEmbedding.from_float(module, group_size=group_size, bits=bits)
    raise TypeError(f"Módulo não quantizável: {type(module).__name__}")
