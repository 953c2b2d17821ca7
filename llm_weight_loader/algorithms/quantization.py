# llm_weight_loader/algorithms/quantization.py

from __future__ import annotations
from dataclasses import dataclass

import torch

SUPPORTED_BITS = (2, 4, 8)


@dataclass
class QuantizedTensor:
    """
    Tensor quantizado por grupos + metadata para dequantizar.

    weight: códigos empacotados em int32, shape [..., n * bits / 32]
    scales, biases: um valor por grupo, shape [..., n / group_size]
    """
    weight: torch.Tensor
    scales: torch.Tensor
    biases: torch.Tensor
    group_size: int
    bits: int


def pack_codes(codes: torch.Tensor, bits: int) -> torch.Tensor:
    """
    Empacota códigos inteiros (< 2**bits) em palavras de 32 bits,
    `32 // bits` códigos por palavra, bits menos significativos primeiro.
    """
    per_word = 32 // bits
    codes = codes.to(torch.int64)
    codes = codes.reshape(*codes.shape[:-1], codes.shape[-1] // per_word, per_word)
    shifts = torch.arange(per_word, dtype=torch.int64, device=codes.device) * bits
    words = (codes << shifts).sum(dim=-1)
    # Reinterpreta [0, 2**32) como int32 com sinal
    words = torch.where(words >= 2 ** 31, words - 2 ** 32, words)
    return words.to(torch.int32)


def unpack_codes(packed: torch.Tensor, bits: int) -> torch.Tensor:
    """Inverso de pack_codes. Aceita int32 ou uint32 (checkpoints MLX)."""
    uint32 = getattr(torch, "uint32", None)
    if uint32 is not None and packed.dtype == uint32:
        packed = packed.view(torch.int32)
    per_word = 32 // bits
    words = packed.to(torch.int64) & 0xFFFFFFFF
    shifts = torch.arange(per_word, dtype=torch.int64, device=packed.device) * bits
    codes = (words.unsqueeze(-1) >> shifts) & ((1 << bits) - 1)
    return codes.reshape(*packed.shape[:-1], packed.shape[-1] * per_word)


@dataclass
class GroupQuantizer:
    """
    Quantização afim por grupos ao longo do último eixo.

    Para cada grupo de `group_size` valores:
    - scale = (max - min) / (2**bits - 1)
    - bias = min
    - q = round((w - bias) / scale), clamp em [0, 2**bits - 1]
    - w_hat = q * scale + bias
    """

    group_size: int = 64
    bits: int = 4

    def __post_init__(self):
        if self.bits not in SUPPORTED_BITS:
            raise ValueError(f"GroupQuantizer.bits deve ser um de {SUPPORTED_BITS}, recebeu {self.bits}")
        if self.group_size <= 0:
            raise ValueError(f"GroupQuantizer.group_size deve ser > 0, recebeu {self.group_size}")

    @property
    def max_code(self) -> int:
        return (1 << self.bits) - 1

    def check_shape(self, last_dim: int) -> None:
        if last_dim % self.group_size != 0:
            raise ValueError(
                f"Última dimensão {last_dim} não é múltipla de group_size={self.group_size}"
            )
        if (last_dim * self.bits) % 32 != 0:
            raise ValueError(f"Última dimensão {last_dim} não empacota em palavras de 32 bits")

    def quantize(self, tensor: torch.Tensor) -> QuantizedTensor:
        if not tensor.is_floating_point():
            raise TypeError(f"GroupQuantizer.quantize espera tensor float, recebeu {tensor.dtype}")

        *lead, last = tensor.shape
        self.check_shape(last)

        # Trabalha em float32 para estabilidade numérica
        x = tensor.to(torch.float32).reshape(*lead, last // self.group_size, self.group_size)

        w_max = x.amax(dim=-1, keepdim=True)
        w_min = x.amin(dim=-1, keepdim=True)
        scales = (w_max - w_min) / self.max_code

        # Grupo constante: qualquer scale serve, todos os códigos viram 0
        scales = torch.where(scales == 0, torch.ones_like(scales), scales)

        q = torch.clamp(torch.round((x - w_min) / scales), 0, self.max_code)
        q = q.reshape(*lead, last)

        return QuantizedTensor(
            weight=pack_codes(q, self.bits),
            scales=scales.squeeze(-1).to(tensor.dtype),
            biases=w_min.squeeze(-1).to(tensor.dtype),
            group_size=self.group_size,
            bits=self.bits,
        )

    def dequantize(self, q: QuantizedTensor) -> torch.Tensor:
        """x_hat = codes * scale + bias, no dtype de `scales`."""
        codes = unpack_codes(q.weight, q.bits).to(torch.float32)
        *lead, last = codes.shape
        groups = codes.reshape(*lead, last // q.group_size, q.group_size)

        x = groups * q.scales.to(torch.float32).unsqueeze(-1) + q.biases.to(torch.float32).unsqueeze(-1)
        return x.reshape(*lead, last).to(q.scales.dtype)
