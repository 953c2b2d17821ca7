from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import json

from .algorithms.quantization import SUPPORTED_BITS


@dataclass(frozen=True)
class QuantizationSpec:
    """
    Parâmetros de quantização por grupos.

    Mesmo formato da chave "quantization" do config.json de modelos
    pré-quantizados, e.g. {"group_size": 64, "bits": 4}.
    """
    group_size: int = 64
    bits: int = 4

    def __post_init__(self):
        if self.group_size <= 0:
            raise ValueError(f"group_size deve ser > 0, recebeu {self.group_size}")
        if self.bits not in SUPPORTED_BITS:
            raise ValueError(f"bits deve ser um de {SUPPORTED_BITS}, recebeu {self.bits}")

    def to_dict(self) -> dict:
        return {"group_size": self.group_size, "bits": self.bits}

    @classmethod
    def from_dict(cls, data: dict) -> "QuantizationSpec":
        return cls(
            group_size=data.get("group_size", 64),
            bits=data.get("bits", 4),
        )

    @classmethod
    def from_model_config(cls, model_dir: Path) -> Optional["QuantizationSpec"]:
        """
        Lê a seção de quantização do config.json do modelo, se existir.
        """
        config_path = Path(model_dir) / "config.json"
        if not config_path.exists():
            return None
        data = json.loads(config_path.read_text(encoding="utf-8"))
        section = data.get("quantization") or data.get("quantization_config")
        if not section:
            return None
        return cls.from_dict(section)


@dataclass
class LoadConfig:
    """
    Configurações de alto nível de um carregamento.

    Simples de serializar (JSON/YAML): representa de onde vêm os pesos
    e como devem ser materializados.
    """
    model: str = ""

    # Hub
    cache_dir: Optional[Path] = None
    revision: str = "main"
    token: Optional[str] = None

    # Quantização opcional
    quantization: Optional[QuantizationSpec] = None

    # Avaliação em lotes
    batch_size: int = 5

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "cache_dir": str(self.cache_dir) if self.cache_dir is not None else None,
            "revision": self.revision,
            "quantization": self.quantization.to_dict() if self.quantization else None,
            "batch_size": self.batch_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoadConfig":
        cache_dir = data.get("cache_dir")
        quantization = data.get("quantization")
        return cls(
            model=data.get("model", ""),
            cache_dir=Path(cache_dir) if cache_dir else None,
            revision=data.get("revision", "main"),
            token=data.get("token"),
            quantization=QuantizationSpec.from_dict(quantization) if quantization else None,
            batch_size=data.get("batch_size", 5),
        )
