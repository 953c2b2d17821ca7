# scripts/profile_batch_size.py

import argparse
import gc
import os
import time
from pathlib import Path

import numpy as np
import psutil
from transformers import AutoConfig, AutoModelForCausalLM

from llm_weight_loader.cli.load_cli import tied_embeddings_sanitizer
from llm_weight_loader.config import QuantizationSpec
from llm_weight_loader.hub import ModelDownloader, model_reference
from llm_weight_loader.loading import load_weights


def get_memory_usage_mb():
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024


def profile_once(model_dir: Path, batch_size: int, quantization):
    config = AutoConfig.from_pretrained(model_dir)
    model = AutoModelForCausalLM.from_config(config)

    mem_before = get_memory_usage_mb()
    start = time.perf_counter()
    load_weights(
        model_dir,
        model,
        quantization,
        sanitize=tied_embeddings_sanitizer(model),
        batch_size=batch_size,
    )
    elapsed = time.perf_counter() - start
    mem_after = get_memory_usage_mb()

    del model
    gc.collect()
    return elapsed, mem_after - mem_before


def main():
    parser = argparse.ArgumentParser(description="Profile load latency / RSS per eval batch size.")
    parser.add_argument("--model", type=str, required=True, help="Hub id ou diretório local.")
    parser.add_argument("--batch_sizes", type=int, nargs="+", default=[1, 5, 20, 100])
    parser.add_argument("--runs", type=int, default=3)
    parser.add_argument("--quantize_from_config", action="store_true")
    args = parser.parse_args()

    model_dir = ModelDownloader().resolve(model_reference(args.model))
    quantization = QuantizationSpec.from_model_config(model_dir) if args.quantize_from_config else None

    print(f"Profiling load of: {model_dir}")
    for batch_size in args.batch_sizes:
        times, mems = [], []
        for _ in range(args.runs):
            elapsed, mem = profile_once(model_dir, batch_size, quantization)
            times.append(elapsed)
            mems.append(mem)

        print(f"\n--- batch_size={batch_size} ---")
        print(f"Latency: {np.mean(times):.4f}s ± {np.std(times):.4f}s")
        print(f"Memory (RSS delta): {np.mean(mems):.2f} MB (Approximation)")


if __name__ == "__main__":
    main()
