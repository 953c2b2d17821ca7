from __future__ import annotations
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """
    Divide `items` em blocos contíguos de no máximo `size` elementos.
    O último bloco pode ser menor.
    """
    if size <= 0:
        raise ValueError(f"size deve ser > 0, recebeu {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
