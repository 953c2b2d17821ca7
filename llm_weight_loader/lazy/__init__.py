"""
Tensores preguiçosos e avaliação em lotes:

- LazyTensor: handle memoizado para um tensor ainda não materializado.
- collect / batched_eval: extraem handles de estruturas aninhadas e os
  forçam em lotes de tamanho fixo.
"""

from .lazy_tensor import LazyTensor, Evaluatable, TensorHandle, evaluate
from .module_state import module_inner_state, pending_bindings, pending_weights
from .evaluator import collect, batched_eval

__all__ = [
    "LazyTensor",
    "Evaluatable",
    "TensorHandle",
    "evaluate",
    "module_inner_state",
    "pending_bindings",
    "pending_weights",
    "collect",
    "batched_eval",
]
