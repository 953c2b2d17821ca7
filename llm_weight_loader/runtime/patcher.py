# llm_weight_loader/runtime/patcher.py

from __future__ import annotations
from typing import Callable, List, Optional

import torch.nn as nn

from llm_weight_loader.logging_utils import get_logger
from llm_weight_loader.runtime.quantized_layers import to_quantized


logger = get_logger(__name__)

QUANTIZABLE_TYPES = (nn.Linear, nn.Embedding)

QuantizePredicate = Callable[[str, nn.Module], bool]


def _replace_module(root: nn.Module, module_name: str, new_module: nn.Module) -> None:
    """
    Seta root.<module_name> = new_module, navegando pelos submódulos.

    Ex:
        module_name="model.layers.0.mlp.up_proj"
        => root.model.layers[0].mlp.up_proj = new_module
    """
    parent_name, _, last = module_name.rpartition(".")
    parent = root.get_submodule(parent_name)
    # nn.Module.__setattr__ registra em _modules (inclusive "0", "1" de ModuleList)
    setattr(parent, last, new_module)


def quantize_model(
    model: nn.Module,
    group_size: int = 64,
    bits: int = 4,
    predicate: Optional[QuantizePredicate] = None,
) -> List[str]:
    """
    Percorre o modelo e substitui nn.Linear / nn.Embedding pela versão
    quantizada por grupos.

    Estratégia:
      - Para cada módulo quantizável com nome 'X',
      - pergunta ao predicate(X, módulo) se deve quantizar.
      - Se sim: substitui in-place por QuantizedLinear/QuantizedEmbedding.
      - Se não: deixa a camada original intacta.

    Retorna:
      nomes dos módulos substituídos, na ordem de named_modules().
    """
    replaced: List[str] = []
    num_candidates = 0

    # Usamos list(...) porque vamos modificar a árvore enquanto iteramos
    for name, module in list(model.named_modules()):
        if not name or not isinstance(module, QUANTIZABLE_TYPES):
            continue
        num_candidates += 1

        if predicate is not None and not predicate(name, module):
            continue

        logger.debug(f"  [QUANT] {name} -> {bits} bits, group_size={group_size}")
        _replace_module(model, name, to_quantized(module, group_size=group_size, bits=bits))
        replaced.append(name)

    logger.info(f"Quantização: {len(replaced)}/{num_candidates} módulos substituídos.")
    return replaced
