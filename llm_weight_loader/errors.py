from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence, Tuple


class WeightLoaderError(Exception):
    """Base para erros do pipeline de carregamento de pesos."""


class LoadCancelled(WeightLoaderError):
    """Cancelamento cooperativo observado em um checkpoint."""


class ShardParseError(WeightLoaderError):
    """Um shard safetensors não pôde ser lido."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Falha ao ler shard {path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class StructuralMismatchError(WeightLoaderError):
    """
    Árvore de parâmetros e módulo não batem.

    - missing: slots do módulo sem valor na árvore.
    - unexpected: chaves da árvore sem slot correspondente.
    - shape_mismatches: (chave, shape do slot, shape carregado).
    """

    def __init__(
        self,
        missing: Iterable[str] = (),
        unexpected: Iterable[str] = (),
        shape_mismatches: Iterable[Tuple[str, Sequence[int], Sequence[int]]] = (),
    ):
        self.missing: List[str] = sorted(missing)
        self.unexpected: List[str] = sorted(unexpected)
        self.shape_mismatches = list(shape_mismatches)
        super().__init__(self._report())

    def _report(self) -> str:
        lines = ["Parâmetros incompatíveis com o módulo:"]
        if self.missing:
            lines.append(f"  faltando ({len(self.missing)}): {_preview(self.missing)}")
        if self.unexpected:
            lines.append(f"  inesperados ({len(self.unexpected)}): {_preview(self.unexpected)}")
        for key, expected, got in self.shape_mismatches:
            lines.append(f"  shape de {key}: esperado {tuple(expected)}, carregado {tuple(got)}")
        return "\n".join(lines)


class UnsupportedContainerError(WeightLoaderError, TypeError):
    """
    O coletor encontrou um valor que não sabe decompor.

    Indica um defeito de integração (um novo formato de container sem
    suporte no coletor), não uma condição recuperável.
    """

    def __init__(self, item: object):
        super().__init__(f"Não foi possível extrair tensores de {type(item).__name__}: {item!r}")
        self.item = item


def _preview(keys: List[str], limit: int = 10) -> str:
    shown = ", ".join(keys[:limit])
    if len(keys) > limit:
        shown += ", ..."
    return shown
