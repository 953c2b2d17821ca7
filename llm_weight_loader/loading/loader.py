# llm_weight_loader/loading/loader.py

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
import time

import torch.nn as nn

from ..cancellation import CancellationToken, check_cancelled
from ..config import LoadConfig, QuantizationSpec
from ..hub import ModelDownloader, ModelReference, model_reference
from ..hub.download import ProgressCallback
from ..io import materialize_weights
from ..lazy import LazyTensor, batched_eval
from ..logging_utils import get_logger
from ..runtime import ModuleSnapshot, apply_parameters, quantize_model, unflatten_tree


logger = get_logger(__name__)

WeightMapping = Dict[str, LazyTensor]
Sanitizer = Callable[[WeightMapping], WeightMapping]


@dataclass
class LoadReport:
    """Resumo de um carregamento."""
    model_directory: Path
    num_tensors: int
    quantized_modules: List[str] = field(default_factory=list)
    num_evaluated: int = 0
    elapsed_s: float = 0.0


def _sanitizer_for(model: nn.Module, sanitize: Optional[Sanitizer]) -> Optional[Sanitizer]:
    if sanitize is not None:
        return sanitize
    # Hook por modelo, se o modelo definir um
    return getattr(model, "sanitize", None)


def load_weights(
    model_directory: Path,
    model: nn.Module,
    quantization: Optional[QuantizationSpec] = None,
    *,
    sanitize: Optional[Sanitizer] = None,
    cancel_token: Optional[CancellationToken] = None,
    batch_size: int = 5,
) -> LoadReport:
    """
    Carrega todos os shards de `model_directory` em `model`.

    Fluxo (estritamente nesta ordem):
    1. Junta os shards *.safetensors num único mapping chave -> LazyTensor.
    2. Sanitize por modelo (uma única vez).
    3. Se houver `quantization`: quantiza os módulos que têm `<path>.scales`
       no mapping.
    4. Desachata o mapping e liga ao modelo com verificação completa.
    5. Força todos os tensores do modelo em lotes de `batch_size`.

    Cancelamento é verificado após cada shard, antes da quantização,
    antes/depois de aplicar os parâmetros e antes de cada lote.

    O módulo só muda se o carregamento terminar: cancelamento ou erro em
    qualquer etapa restaura submódulos, slots e bindings pendentes.
    """
    start = time.perf_counter()
    model_directory = Path(model_directory)

    # 1) Shards
    weights = materialize_weights(model_directory, cancel_token=cancel_token)

    # 2) Limpeza por modelo
    sanitizer = _sanitizer_for(model, sanitize)
    if sanitizer is not None:
        weights = sanitizer(weights)

    # Daqui em diante o módulo é alterado: qualquer falha desfaz tudo
    snapshot = ModuleSnapshot.capture(model)
    try:
        # 3) Quantização opcional
        quantized: List[str] = []
        if quantization is not None:
            check_cancelled(cancel_token)
            quantized = quantize_model(
                model,
                group_size=quantization.group_size,
                bits=quantization.bits,
                predicate=lambda path, _module: f"{path}.scales" in weights,
            )

        # 4) Aplica os pesos
        check_cancelled(cancel_token)
        parameters = unflatten_tree(weights)

        check_cancelled(cancel_token)
        apply_parameters(model, parameters, verify=True)

        # 5) Materializa
        check_cancelled(cancel_token)
        num_evaluated = batched_eval(model, batch_size=batch_size, cancel_token=cancel_token)
    except Exception:
        snapshot.restore(model)
        raise

    elapsed = time.perf_counter() - start
    logger.info(f"Pesos carregados de {model_directory} em {elapsed:.2f}s.")

    return LoadReport(
        model_directory=model_directory,
        num_tensors=len(weights),
        quantized_modules=quantized,
        num_evaluated=num_evaluated,
        elapsed_s=elapsed,
    )


def load_model(
    reference: ModelReference,
    model: nn.Module,
    quantization: Optional[QuantizationSpec] = None,
    progress_callback: Optional[ProgressCallback] = None,
    *,
    downloader: Optional[ModelDownloader] = None,
    sanitize: Optional[Sanitizer] = None,
    cancel_token: Optional[CancellationToken] = None,
    batch_size: int = 5,
) -> LoadReport:
    """Resolve a referência (Hub ou diretório) e carrega os pesos em `model`."""
    downloader = downloader or ModelDownloader()
    model_directory = downloader.resolve(reference, progress_callback=progress_callback)
    return load_weights(
        model_directory,
        model,
        quantization,
        sanitize=sanitize,
        cancel_token=cancel_token,
        batch_size=batch_size,
    )


@dataclass
class WeightLoader:
    """
    Carregamento dirigido por um LoadConfig.

    Responsabilidades:
    - Resolver o modelo (Hub com fallback para cache local, ou diretório).
    - Rodar o pipeline de pesos sobre um módulo fornecido pelo chamador.
    """

    config: LoadConfig

    def _downloader(self) -> ModelDownloader:
        return ModelDownloader(
            cache_dir=self.config.cache_dir,
            revision=self.config.revision,
            token=self.config.token,
        )

    def resolve(self, progress_callback: Optional[ProgressCallback] = None) -> Path:
        reference = model_reference(self.config.model)
        return self._downloader().resolve(reference, progress_callback=progress_callback)

    def load(
        self,
        model: nn.Module,
        model_directory: Optional[Path] = None,
        *,
        sanitize: Optional[Sanitizer] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LoadReport:
        if model_directory is None:
            model_directory = self.resolve(progress_callback=progress_callback)
        return load_weights(
            model_directory,
            model,
            self.config.quantization,
            sanitize=sanitize,
            cancel_token=cancel_token,
            batch_size=self.config.batch_size,
        )
