# llm_weight_loader/io/weight_materializer.py

from __future__ import annotations
from pathlib import Path
from typing import Dict, Iterator, Optional
import os

from ..cancellation import CancellationToken, check_cancelled
from ..lazy import LazyTensor
from ..logging_utils import get_logger
from .safetensor_reader import SafeTensorReader


logger = get_logger(__name__)

SHARD_SUFFIX = ".safetensors"


def _raise_walk_error(error: OSError) -> None:
    raise error


def iter_shard_files(directory: Path) -> Iterator[Path]:
    """
    Percorre `directory` recursivamente e devolve os shards safetensors.

    Ordem determinística: top-down, nomes de arquivos e subdiretórios
    ordenados; arquivos de um diretório vêm antes dos subdiretórios.
    """
    directory = Path(directory)
    if not directory.exists():
        raise FileNotFoundError(f"Diretório do modelo não encontrado: {directory}")
    if not directory.is_dir():
        raise NotADirectoryError(f"Não é um diretório: {directory}")

    for root, dirnames, filenames in os.walk(directory, onerror=_raise_walk_error):
        # os.walk respeita a ordem de dirnames quando modificada in-place
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(root) / filename
            if path.suffix == SHARD_SUFFIX:
                yield path


def materialize_weights(
    directory: Path,
    cancel_token: Optional[CancellationToken] = None,
) -> Dict[str, LazyTensor]:
    """
    Junta todos os shards de `directory` num único dict chave -> LazyTensor.

    - Em colisão de chave, o shard enumerado depois vence.
    - Checkpoint de cancelamento após cada shard.
    - Shard ilegível -> ShardParseError; erros de listagem -> OSError.
    """
    logger.info(f"Carregando shards de: {directory}")

    weights: Dict[str, LazyTensor] = {}
    num_shards = 0
    for shard_path in iter_shard_files(directory):
        shard = SafeTensorReader.open(shard_path).lazy_tensors()
        logger.debug(f"  [SHARD] {shard_path.name}: {len(shard)} tensores")
        weights.update(shard)
        num_shards += 1
        check_cancelled(cancel_token)

    logger.info(f"{len(weights)} tensores em {num_shards} shards.")
    return weights
