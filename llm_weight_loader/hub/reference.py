# llm_weight_loader/hub/reference.py

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Union


@dataclass(frozen=True)
class RemoteId:
    """Id de repositório no Hub, e.g. "mlx-community/gemma-2-2b-it-4bit"."""
    repo_id: str

    def __str__(self) -> str:
        return self.repo_id


@dataclass(frozen=True)
class LocalDirectory:
    """Diretório local que já contém os arquivos do modelo."""
    path: Path

    def __str__(self) -> str:
        return str(self.path)


ModelReference = Union[RemoteId, LocalDirectory]


def model_reference(text: str) -> ModelReference:
    """
    Interpreta uma string (e.g. argumento de CLI) como referência de modelo.

    Caminhos locais começam com /, ~ ou . ou já existem no disco;
    o resto é tratado como id do Hub ("org/nome").
    """
    text = text.strip()
    if not text:
        raise ValueError("Referência de modelo vazia")
    if text.startswith(("/", "~", ".")) or Path(text).exists():
        return LocalDirectory(Path(text).expanduser())
    return RemoteId(text)
