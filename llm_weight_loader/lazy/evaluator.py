# llm_weight_loader/lazy/evaluator.py

from __future__ import annotations
from typing import Any, List, Mapping, Optional

import torch
import torch.nn as nn

from ..cancellation import CancellationToken, check_cancelled
from ..errors import UnsupportedContainerError
from ..logging_utils import get_logger
from ..utils import chunked
from .lazy_tensor import Evaluatable, LazyTensor, TensorHandle, evaluate
from .module_state import module_inner_state


logger = get_logger(__name__)

MAX_TUPLE_ARITY = 5


def collect(item: Any, into: List[TensorHandle]) -> None:
    """
    Extrai recursivamente todos os handles de tensores de `item`.

    Formatos aceitos:
    - Evaluatable: contribui `inner_state()`.
    - nn.Module: slots do módulo (bindings pendentes ou tensores).
    - LazyTensor / torch.Tensor: o próprio handle.
    - Mapping: apenas os valores, recursivamente (chaves ignoradas).
    - list: elemento a elemento.
    - tuple com até 5 componentes: componente a componente.
    - str, int, float: ignorados (aparecem em pares nome/tensor).

    Qualquer outro formato é um defeito de integração e levanta
    UnsupportedContainerError.
    """
    if isinstance(item, Evaluatable):
        into.extend(item.inner_state())
    elif isinstance(item, nn.Module):
        into.extend(module_inner_state(item))
    elif isinstance(item, (LazyTensor, torch.Tensor)):
        into.append(item)
    elif isinstance(item, Mapping):
        for value in item.values():
            collect(value, into)
    elif isinstance(item, list):
        for value in item:
            collect(value, into)
    elif isinstance(item, tuple) and len(item) <= MAX_TUPLE_ARITY:
        for value in item:
            collect(value, into)
    elif isinstance(item, (str, int, float)):
        # e.g. ("layer.weight", tensor)
        pass
    else:
        raise UnsupportedContainerError(item)


def batched_eval(
    *values: Any,
    batch_size: int = 5,
    cancel_token: Optional[CancellationToken] = None,
) -> int:
    """
    Força todos os tensores alcançáveis a partir de `values` em lotes de
    no máximo `batch_size` handles.

    Ordem: argumentos na ordem dada, depois percurso em profundidade.
    Cada lote termina antes do próximo começar, o que limita quantos
    buffers intermediários coexistem (pico de memória).

    Retorna o número de handles coletados.
    """
    handles: List[TensorHandle] = []
    for item in values:
        collect(item, handles)

    batches = chunked(handles, batch_size)
    logger.debug(f"Avaliando {len(handles)} tensores em {len(batches)} lotes (batch_size={batch_size})")

    for batch in batches:
        check_cancelled(cancel_token)
        evaluate(batch)

    return len(handles)
