"""
Pacote principal do LLM Weight Loader.

Ideia central:
- Resolver um modelo (id do Hub ou diretório local) para um diretório com shards.
- Juntar os shards safetensors num mapping plano de tensores preguiçosos.
- Sanitizar, quantizar (opcional) e ligar os pesos a um nn.Module.
- Materializar tudo em lotes de tamanho fixo para controlar o pico de memória.

Módulos principais:
- hub: resolução/download de modelos com fallback para o cache local.
- io: leitura de shards safetensors.
- algorithms: quantização por grupos.
- runtime: camadas quantizadas, quantização do modelo, aplicação de parâmetros.
- lazy: tensores preguiçosos e avaliação em lotes.
- loading: orquestração do pipeline.
- cli: ponto de entrada por linha de comando.
"""

from .cancellation import CancellationToken
from .config import LoadConfig, QuantizationSpec
from .hub import LocalDirectory, RemoteId
from .lazy import batched_eval
from .loading import WeightLoader, load_model, load_weights

__all__ = [
    "CancellationToken",
    "LoadConfig",
    "QuantizationSpec",
    "LocalDirectory",
    "RemoteId",
    "batched_eval",
    "WeightLoader",
    "load_model",
    "load_weights",
]
