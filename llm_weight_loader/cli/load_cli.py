# llm_weight_loader/cli/load_cli.py

from __future__ import annotations
import argparse
from pathlib import Path
from typing import Dict, Optional

import torch
import torch.nn as nn
from transformers import AutoConfig, AutoModelForCausalLM, AutoTokenizer

from llm_weight_loader.config import LoadConfig, QuantizationSpec
from llm_weight_loader.lazy import LazyTensor
from llm_weight_loader.loading import WeightLoader
from llm_weight_loader.logging_utils import get_logger, setup_logging


logger = get_logger(__name__)


def _module_name(model: nn.Module, target: Optional[nn.Module]) -> Optional[str]:
    if target is None:
        return None
    for name, module in model.named_modules():
        if module is target:
            return name
    return None


def tied_embeddings_sanitizer(model: nn.Module):
    """
    Sanitize para modelos transformers com embeddings amarrados: o
    checkpoint não traz `lm_head.weight`, então ele reaproveita o tensor
    de entrada.
    """
    config = getattr(model, "config", None)
    tied = bool(getattr(config, "tie_word_embeddings", False))
    input_name = _module_name(model, model.get_input_embeddings())
    output_name = _module_name(model, model.get_output_embeddings())

    def sanitize(weights: Dict[str, LazyTensor]) -> Dict[str, LazyTensor]:
        if not tied or input_name is None or output_name is None:
            return weights
        source = f"{input_name}.weight"
        for suffix in ("weight", "scales", "biases"):
            key = f"{output_name}.{suffix}"
            if key not in weights and f"{input_name}.{suffix}" in weights:
                weights[key] = weights[f"{input_name}.{suffix}"]
        logger.debug(f"Embeddings amarrados: {output_name} <- {source}")
        return weights

    return sanitize


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Load LLM weights (Hub id or local dir) into a transformers model."
    )
    p.add_argument("--model", type=str, required=True, help="Hub id (org/name) ou diretório local.")
    p.add_argument("--cache_dir", type=str, default=None, help="Cache do Hub (default: HF_HUB_CACHE).")
    p.add_argument("--revision", type=str, default="main")
    p.add_argument("--group_size", type=int, default=None, help="Quantiza com este group_size.")
    p.add_argument("--bits", type=int, default=None, help="Quantiza com estes bits.")
    p.add_argument(
        "--quantize_from_config",
        action="store_true",
        help="Usa a seção 'quantization' do config.json do modelo.",
    )
    p.add_argument("--batch_size", type=int, default=5, help="Tensores por lote de avaliação.")
    p.add_argument("--prompt", type=str, default=None, help="Gera texto após carregar.")
    p.add_argument("--max_new_tokens", type=int, default=32)
    p.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "cuda"],
    )
    return p


def _quantization_from_args(args: argparse.Namespace, model_dir: Path) -> Optional[QuantizationSpec]:
    if args.quantize_from_config:
        return QuantizationSpec.from_model_config(model_dir)
    if args.group_size is not None or args.bits is not None:
        return QuantizationSpec(group_size=args.group_size or 64, bits=args.bits or 4)
    return None


def main():
    parser = build_argparser()
    args = parser.parse_args()

    setup_logging()

    config = LoadConfig(
        model=args.model,
        cache_dir=Path(args.cache_dir) if args.cache_dir else None,
        revision=args.revision,
        batch_size=args.batch_size,
    )
    loader = WeightLoader(config=config)

    def on_progress(transferred: int, total: Optional[int]) -> None:
        logger.info(f"Download: {transferred}/{total if total is not None else '?'} arquivos")

    model_dir = loader.resolve(progress_callback=on_progress)
    config.quantization = _quantization_from_args(args, model_dir)

    logger.info(f"Construindo modelo a partir de {model_dir}/config.json")
    hf_config = AutoConfig.from_pretrained(model_dir)
    model = AutoModelForCausalLM.from_config(hf_config)

    report = loader.load(model, model_directory=model_dir, sanitize=tied_embeddings_sanitizer(model))
    logger.info(
        f"{report.num_tensors} tensores, {len(report.quantized_modules)} módulos quantizados, "
        f"{report.num_evaluated} tensores avaliados em {report.elapsed_s:.2f}s"
    )

    if args.prompt is None:
        return

    if args.device == "auto":
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    else:
        device = torch.device(args.device)

    model.to(device)
    model.eval()

    tokenizer = AutoTokenizer.from_pretrained(model_dir)
    inputs = tokenizer(args.prompt, return_tensors="pt").to(device)

    # Geração determinística (sem sampling)
    with torch.no_grad():
        output_ids = model.generate(
            **inputs,
            max_new_tokens=args.max_new_tokens,
            do_sample=False,
        )

    text = tokenizer.decode(output_ids[0], skip_special_tokens=True)
    print("\n=== Generated Text ===")
    print(text)
    print("======================\n")


if __name__ == "__main__":
    main()
