# llm_weight_loader/lazy/module_state.py

from __future__ import annotations
from itertools import chain
from typing import Dict, List

import torch.nn as nn

from .lazy_tensor import LazyTensor, TensorHandle

# Atributo (por submódulo) com os bindings ainda não forçados: {slot: LazyTensor}
PENDING_ATTR = "_pending_weights"


def pending_bindings(module: nn.Module) -> Dict[str, LazyTensor]:
    """Bindings pendentes diretos de `module` (sem descer nos filhos)."""
    pending = getattr(module, PENDING_ATTR, None)
    if pending is None:
        pending = {}
        setattr(module, PENDING_ATTR, pending)
    return pending


def module_inner_state(module: nn.Module) -> List[TensorHandle]:
    """
    Tensores de um módulo, na ordem de `modules()` e depois dos slots.

    Um slot com binding pendente contribui o LazyTensor (forçá-lo grava o
    valor no módulo); os demais contribuem o tensor concreto.
    """
    handles: List[TensorHandle] = []
    for sub in module.modules():
        pending = getattr(sub, PENDING_ATTR, None) or {}
        for name, tensor in chain(sub._parameters.items(), sub._buffers.items()):
            if name in pending:
                handles.append(pending[name])
            elif tensor is not None:
                handles.append(tensor)
    return handles


def pending_weights(module: nn.Module) -> List[str]:
    """Nomes completos dos slots cujo binding ainda não foi forçado."""
    names = []
    for prefix, sub in module.named_modules():
        pending = getattr(sub, PENDING_ATTR, None) or {}
        for name, handle in pending.items():
            if not handle.is_materialized:
                names.append(f"{prefix}.{name}" if prefix else name)
    return names
