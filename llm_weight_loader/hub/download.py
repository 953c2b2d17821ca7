# llm_weight_loader/hub/download.py

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Type, Union

from huggingface_hub import constants, snapshot_download
from huggingface_hub.errors import LocalEntryNotFoundError, RepositoryNotFoundError
from tqdm.auto import tqdm

from ..logging_utils import get_logger
from .reference import LocalDirectory, ModelReference, RemoteId


logger = get_logger(__name__)

# Apenas pesos e configs; tokenizer.json entra via *.json
MODEL_FILE_PATTERNS = ["*.safetensors", "*.json"]

ProgressCallback = Callable[[int, Optional[int]], None]


def _progress_tqdm_class(callback: ProgressCallback) -> Type[tqdm]:
    """
    tqdm que repassa cada atualização para `callback(transferred, total)`.

    O Hub atualiza a barra a partir das threads de download: o callback
    precisa ser seguro para chamadas concorrentes.
    """

    class _ProgressTqdm(tqdm):
        def update(self, n=1):
            displayed = super().update(n)
            callback(int(self.n), int(self.total) if self.total is not None else None)
            return displayed

    return _ProgressTqdm


def cache_directory(
    repo_id: str,
    cache_dir: Optional[Union[str, Path]] = None,
    revision: str = "main",
) -> Path:
    """
    Diretório local onde o snapshot de `repo_id` fica (ou ficaria) no cache.

    Mesmo layout do huggingface_hub:
        <cache>/models--<org>--<nome>/snapshots/<commit>
    O commit vem de refs/<revision>; sem ref, devolve a pasta do repo.
    """
    base = Path(cache_dir) if cache_dir is not None else Path(constants.HF_HUB_CACHE)
    repo_folder = base / ("models--" + repo_id.replace("/", "--"))
    ref_path = repo_folder / "refs" / revision
    if ref_path.is_file():
        commit = ref_path.read_text(encoding="utf-8").strip()
        return repo_folder / "snapshots" / commit
    return repo_folder


@dataclass
class ModelDownloader:
    """
    Resolve uma referência de modelo para um diretório local.

    - RemoteId: snapshot filtrado (*.safetensors, *.json) do Hub.
    - LocalDirectory: devolvido sem acesso à rede.

    Falhas de autorização (normalmente: repo não existe no servidor) e
    falta de conectividade caem para o diretório de cache local, para que
    um modelo baixado antes continue utilizável offline. Qualquer outra
    falha é propagada.
    """
    cache_dir: Optional[Path] = None
    revision: str = "main"
    token: Optional[str] = None
    allow_patterns: List[str] = field(default_factory=lambda: list(MODEL_FILE_PATTERNS))

    def local_directory(self, reference: ModelReference) -> Path:
        if isinstance(reference, LocalDirectory):
            return Path(reference.path)
        return cache_directory(reference.repo_id, cache_dir=self.cache_dir, revision=self.revision)

    def resolve(
        self,
        reference: ModelReference,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        if isinstance(reference, LocalDirectory):
            return Path(reference.path)
        if not isinstance(reference, RemoteId):
            raise TypeError(f"Referência de modelo inválida: {reference!r}")

        kwargs = {}
        if progress_callback is not None:
            kwargs["tqdm_class"] = _progress_tqdm_class(progress_callback)

        try:
            logger.info(f"Baixando {reference.repo_id} ({', '.join(self.allow_patterns)})")
            path = snapshot_download(
                repo_id=reference.repo_id,
                revision=self.revision,
                cache_dir=str(self.cache_dir) if self.cache_dir is not None else None,
                token=self.token,
                allow_patterns=self.allow_patterns,
                **kwargs,
            )
            return Path(path)

        except RepositoryNotFoundError as e:
            # 401/404: normalmente o repo não existe no servidor -> tenta o cache local
            logger.warning(
                f"Repositório {reference.repo_id} inacessível ({type(e).__name__}); usando cache local."
            )
            return self.local_directory(reference)

        except (LocalEntryNotFoundError, ConnectionError) as e:
            logger.warning(f"Sem conexão com o Hub ({type(e).__name__}); usando cache local.")
            return self.local_directory(reference)


def resolve_model_directory(
    reference: ModelReference,
    progress_callback: Optional[ProgressCallback] = None,
    *,
    cache_dir: Optional[Path] = None,
    revision: str = "main",
    token: Optional[str] = None,
) -> Path:
    downloader = ModelDownloader(cache_dir=cache_dir, revision=revision, token=token)
    return downloader.resolve(reference, progress_callback=progress_callback)
