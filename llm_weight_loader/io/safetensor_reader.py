# llm_weight_loader/io/safetensor_reader.py

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import torch
from safetensors import SafetensorError, safe_open

from ..errors import ShardParseError
from ..lazy import LazyTensor


@dataclass
class SafeTensorReader:
    """
    Leitor de um shard safetensors.

    Responsabilidades:
    - Listar as entradas do shard lendo apenas o header.
    - Produzir um LazyTensor por entrada, que lê o tensor sob demanda.
    - Ler metadados do arquivo.
    """
    path: Path

    @classmethod
    def open(cls, path: Path) -> "SafeTensorReader":
        return cls(path=Path(path))

    def lazy_tensors(self) -> Dict[str, LazyTensor]:
        """Um handle por chave; nenhum dado de tensor é lido aqui."""
        tensors: Dict[str, LazyTensor] = {}
        try:
            with safe_open(self.path, framework="pt", device="cpu") as f:
                for key in f.keys():
                    tensor_slice = f.get_slice(key)
                    tensors[key] = LazyTensor(
                        loader=_TensorLoader(self.path, key),
                        shape=tuple(tensor_slice.get_shape()),
                        dtype=tensor_slice.get_dtype(),
                        name=key,
                    )
        except SafetensorError as e:
            raise ShardParseError(self.path, str(e)) from e
        return tensors

    def get_tensors(self) -> Dict[str, torch.Tensor]:
        """Carrega todos os tensores de uma vez (cuidado com memória)."""
        return {key: handle.materialize() for key, handle in self.lazy_tensors().items()}

    def get_metadata(self) -> Dict[str, str]:
        """Lê o bloco de metadados do arquivo."""
        try:
            with safe_open(self.path, framework="pt", device="cpu") as f:
                return f.metadata() or {}
        except SafetensorError as e:
            raise ShardParseError(self.path, str(e)) from e


@dataclass(frozen=True)
class _TensorLoader:
    """Lê uma única entrada de um shard (reabre o arquivo, mmap)."""
    path: Path
    key: str

    def __call__(self) -> torch.Tensor:
        try:
            with safe_open(self.path, framework="pt", device="cpu") as f:
                return f.get_tensor(self.key)
        except SafetensorError as e:
            raise ShardParseError(self.path, str(e)) from e
