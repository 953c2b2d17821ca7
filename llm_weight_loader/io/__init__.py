"""
Módulo de IO: leitura de shards safetensors.

Responsabilidades:
- Enumerar shards `*.safetensors` de um diretório (recursivamente).
- Ler cada shard como handles preguiçosos.
- Juntar tudo num único mapping chave -> tensor.
"""

from .safetensor_reader import SafeTensorReader
from .weight_materializer import iter_shard_files, materialize_weights

__all__ = [
    "SafeTensorReader",
    "iter_shard_files",
    "materialize_weights",
]
