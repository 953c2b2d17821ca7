# llm_weight_loader/runtime/parameters.py

from __future__ import annotations
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import torch
import torch.nn as nn

from llm_weight_loader.errors import StructuralMismatchError
from llm_weight_loader.lazy import LazyTensor, TensorHandle, pending_bindings
from llm_weight_loader.lazy.module_state import PENDING_ATTR
from llm_weight_loader.logging_utils import get_logger


logger = get_logger(__name__)

SEPARATOR = "."

ParameterTree = Union[Dict[str, Any], List[Any]]


def unflatten_tree(weights: Mapping[str, Any], sep: str = SEPARATOR) -> ParameterTree:
    """
    Converte {"a.b.0.c": x} em {"a": {"b": [{"c": x}]}}.

    Um nível cujas chaves são exatamente "0".."n-1" vira lista; qualquer
    outro nível fica dict, então flatten_tree(unflatten_tree(w)) == w.
    """
    root: Dict[str, Any] = {}
    for key, value in weights.items():
        parts = key.split(sep)
        node = root
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ValueError(f"Chave {key!r} conflita com um tensor já presente em {part!r}")
            node = child
        if isinstance(node.get(parts[-1]), dict):
            raise ValueError(f"Chave {key!r} é prefixo de outras chaves")
        node[parts[-1]] = value
    return _listify(root)


def _listify(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    converted = {k: _listify(v) for k, v in node.items()}
    indices = [str(i) for i in range(len(converted))]
    if converted and set(converted) == set(indices):
        return [converted[i] for i in indices]
    return converted


def flatten_tree(tree: Any, prefix: Optional[str] = None, sep: str = SEPARATOR) -> Dict[str, Any]:
    """
    Inverso de unflatten_tree: listas contribuem índices como chaves.

    prefix=None marca a raiz; "" é um segmento vazio legítimo (chave ".a").
    """
    if isinstance(tree, dict):
        items = tree.items()
    elif isinstance(tree, list):
        items = ((str(i), v) for i, v in enumerate(tree))
    else:
        return {prefix if prefix is not None else "": tree}

    flat: Dict[str, Any] = {}
    for key, value in items:
        flat.update(flatten_tree(value, key if prefix is None else f"{prefix}{sep}{key}", sep))
    return flat


def _known_shape(value: TensorHandle) -> Optional[Tuple[int, ...]]:
    if isinstance(value, torch.Tensor):
        return tuple(value.shape)
    return value.shape


def _check_slot_shape(module: nn.Module, attr: str, key: str, tensor: torch.Tensor) -> None:
    old = module._parameters.get(attr) if attr in module._parameters else module._buffers.get(attr)
    if old is not None and tuple(old.shape) != tuple(tensor.shape):
        raise StructuralMismatchError(shape_mismatches=[(key, tuple(old.shape), tuple(tensor.shape))])


def _assign_tensor(module: nn.Module, attr: str, key: str, tensor: torch.Tensor) -> torch.Tensor:
    """
    Grava `tensor` no slot `attr` de `module` (parâmetro ou buffer).

    Handles derivados (sanitize via `map`) não têm shape conhecido antes
    de serem forçados: o shape é conferido aqui, contra o slot atual.
    """
    _check_slot_shape(module, attr, key, tensor)
    if attr in module._parameters:
        old = module._parameters[attr]
        if old is not None and not old.is_meta:
            tensor = tensor.to(old.device)
        requires_grad = old.requires_grad if old is not None else False
        module._parameters[attr] = nn.Parameter(tensor, requires_grad=requires_grad and tensor.is_floating_point())
    else:
        old = module._buffers.get(attr)
        if old is not None and not old.is_meta:
            tensor = tensor.to(old.device)
        module._buffers[attr] = tensor

    pending = getattr(module, PENDING_ATTR, None)
    if pending:
        pending.pop(attr, None)
    return tensor


def _bind(module: nn.Module, attr: str, key: str, value: TensorHandle) -> None:
    if isinstance(value, LazyTensor) and not value.is_materialized:
        # O valor só é gravado no módulo quando o binding for forçado
        pending_bindings(module)[attr] = value.map(partial(_assign_tensor, module, attr, key))
    elif isinstance(value, LazyTensor):
        _assign_tensor(module, attr, key, value.materialize())
    else:
        _assign_tensor(module, attr, key, value)


@dataclass
class ModuleSnapshot:
    """
    Estado de um módulo antes de um carregamento: submódulos e tensores
    de cada slot (referências, sem cópia).

    `restore` desfaz substituições de submódulos (quantização), escritas
    em slots e bindings pendentes, deixando o módulo como estava.
    """
    modules: Dict[str, nn.Module]
    slots: List[Tuple[nn.Module, str, bool, Optional[torch.Tensor]]]

    @classmethod
    def capture(cls, model: nn.Module) -> "ModuleSnapshot":
        modules = dict(model.named_modules())
        slots = []
        for module in modules.values():
            for attr, tensor in module._parameters.items():
                slots.append((module, attr, True, tensor))
            for attr, tensor in module._buffers.items():
                slots.append((module, attr, False, tensor))
        return cls(modules=modules, slots=slots)

    def restore(self, model: nn.Module) -> None:
        # Pais antes dos filhos: restaurar um pai já traz a subárvore original
        for name in sorted(self.modules, key=lambda n: n.count(SEPARATOR)):
            if not name:
                continue
            parent_name, _, last = name.rpartition(SEPARATOR)
            parent = model.get_submodule(parent_name)
            if parent._modules.get(last) is not self.modules[name]:
                parent._modules[last] = self.modules[name]

        for module, attr, is_parameter, tensor in self.slots:
            if is_parameter:
                module._parameters[attr] = tensor
            else:
                module._buffers[attr] = tensor

        for module in self.modules.values():
            if PENDING_ATTR in module.__dict__:
                del module.__dict__[PENDING_ATTR]
        logger.info("Carregamento desfeito: módulo restaurado ao estado anterior.")


def verify_parameters(model: nn.Module, flat: Mapping[str, TensorHandle]) -> None:
    """
    Verificação simétrica: todo slot do módulo precisa de um valor e todo
    valor precisa de um slot; shapes conhecidos precisam bater.
    """
    slots = model.state_dict(keep_vars=True)
    missing = set(slots) - set(flat)
    unexpected = set(flat) - set(slots)

    shape_mismatches = []
    for key, value in flat.items():
        if key not in slots:
            continue
        shape = _known_shape(value)
        if shape is not None and tuple(slots[key].shape) != shape:
            shape_mismatches.append((key, tuple(slots[key].shape), shape))

    if missing or unexpected or shape_mismatches:
        raise StructuralMismatchError(missing, unexpected, shape_mismatches)


def apply_parameters(model: nn.Module, parameters: ParameterTree, verify: bool = True) -> int:
    """
    Liga a árvore de parâmetros aos slots do módulo.

    Com verify=True, qualquer divergência levanta StructuralMismatchError
    antes de qualquer mutação. Os tensores preguiçosos ficam pendentes no
    módulo até serem forçados (ver batched_eval).

    Retorna o número de slots ligados.
    """
    flat = flatten_tree(parameters)
    if verify:
        verify_parameters(model, flat)

    slots = model.state_dict(keep_vars=True)
    bound = 0
    for key, value in flat.items():
        if key not in slots:
            logger.debug(f"  [SKIP] {key} sem slot no módulo")
            continue
        module_name, _, attr = key.rpartition(SEPARATOR)
        _bind(model.get_submodule(module_name), attr, key, value)
        bound += 1

    logger.info(f"{bound} parâmetros ligados ao modelo.")
    return bound
