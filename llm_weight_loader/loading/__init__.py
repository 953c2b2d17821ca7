"""
Orquestração do carregamento:

- load_weights: diretório -> shards -> sanitize -> quantização -> módulo.
- load_model: referência de modelo (Hub ou diretório) -> load_weights.
- WeightLoader: o mesmo fluxo a partir de um LoadConfig.
"""

from .loader import LoadReport, WeightLoader, load_model, load_weights

__all__ = ["LoadReport", "WeightLoader", "load_model", "load_weights"]
