from __future__ import annotations

import threading
from typing import Optional

from .errors import LoadCancelled


class CancellationToken:
    """
    Flag de cancelamento compartilhado por uma operação de carregamento.

    O pipeline consulta `check()` em pontos bem definidos (após cada shard,
    antes da quantização, antes/depois de aplicar parâmetros e antes de cada
    lote de avaliação). `cancel()` pode ser chamado de outra thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise LoadCancelled("Carregamento cancelado")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Checkpoint que aceita token ausente (sem cancelamento)."""
    if token is not None:
        token.check()
