"""
Aquisição de modelos: referência (Hub id ou diretório) -> diretório local.
"""

from .reference import LocalDirectory, ModelReference, RemoteId, model_reference
from .download import MODEL_FILE_PATTERNS, ModelDownloader, cache_directory, resolve_model_directory

__all__ = [
    "LocalDirectory",
    "ModelReference",
    "RemoteId",
    "model_reference",
    "MODEL_FILE_PATTERNS",
    "ModelDownloader",
    "cache_directory",
    "resolve_model_directory",
]
