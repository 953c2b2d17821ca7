# llm_weight_loader/lazy/lazy_tensor.py

from __future__ import annotations
from typing import Callable, Iterable, List, Optional, Protocol, Tuple, Union, runtime_checkable

import torch


class LazyTensor:
    """
    Handle para um tensor ainda não materializado.

    O tensor só é produzido em `materialize()`; o resultado fica em cache,
    então forçar o mesmo handle de novo não refaz o trabalho.
    Pode ser compartilhado por várias estruturas (mapping, árvore, módulo).

    shape/dtype são opcionais: vêm do header do safetensors quando o handle
    aponta direto para um arquivo; handles derivados via `map` não os conhecem.
    """

    def __init__(
        self,
        loader: Callable[[], torch.Tensor],
        shape: Optional[Tuple[int, ...]] = None,
        dtype: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self._loader: Optional[Callable[[], torch.Tensor]] = loader
        self._value: Optional[torch.Tensor] = None
        self.shape = tuple(shape) if shape is not None else None
        self.dtype = dtype
        self.name = name

    @classmethod
    def of(cls, tensor: torch.Tensor, name: Optional[str] = None) -> "LazyTensor":
        """Handle já materializado para um tensor concreto."""
        handle = cls(loader=lambda: tensor, shape=tuple(tensor.shape), dtype=str(tensor.dtype), name=name)
        handle.materialize()
        return handle

    @property
    def is_materialized(self) -> bool:
        return self._loader is None

    def materialize(self) -> torch.Tensor:
        if self._loader is not None:
            self._value = self._loader()
            # Libera o closure (pode segurar o handle de origem)
            self._loader = None
        return self._value

    def map(
        self,
        fn: Callable[[torch.Tensor], torch.Tensor],
        shape: Optional[Tuple[int, ...]] = None,
    ) -> "LazyTensor":
        """
        Handle derivado: `fn` é aplicada ao valor deste handle quando o
        derivado for forçado. Usado por `sanitize` (transpose, reshape, ...).
        """
        return LazyTensor(loader=lambda: fn(self.materialize()), shape=shape, name=self.name)

    def __repr__(self) -> str:
        state = "materialized" if self.is_materialized else "pending"
        return f"LazyTensor(name={self.name!r}, shape={self.shape}, dtype={self.dtype}, {state})"


TensorHandle = Union[LazyTensor, torch.Tensor]


@runtime_checkable
class Evaluatable(Protocol):
    """Objeto que expõe seus tensores internos para avaliação."""

    def inner_state(self) -> List[TensorHandle]:
        ...


def evaluate(handles: Iterable[TensorHandle]) -> None:
    """
    Força todos os handles do lote antes de retornar.

    torch.Tensor concreto já está materializado: no-op.
    """
    for handle in handles:
        if isinstance(handle, LazyTensor):
            handle.materialize()
