import json

import pytest
import torch
import torch.nn as nn
from safetensors.torch import save_file

import llm_weight_loader.hub.download as download_module
import llm_weight_loader.io.weight_materializer as materializer_module
from llm_weight_loader import (
    CancellationToken,
    LoadConfig,
    QuantizationSpec,
    RemoteId,
    WeightLoader,
    load_model,
    load_weights,
)
from llm_weight_loader.algorithms import GroupQuantizer
from llm_weight_loader.errors import LoadCancelled, StructuralMismatchError
from llm_weight_loader.hub import ModelDownloader
from llm_weight_loader.lazy import pending_weights
from llm_weight_loader.runtime import QuantizedLinear


DIM = 64


class TinyLM(nn.Module):
    def __init__(self):
        super().__init__()
        self.embed = nn.Embedding(16, DIM)
        self.layers = nn.ModuleList([nn.Linear(DIM, DIM) for _ in range(2)])
        self.norm = nn.LayerNorm(DIM)

    def forward(self, ids):
        h = self.embed(ids)
        for layer in self.layers:
            h = layer(h)
        return self.norm(h)


class SanitizingLM(TinyLM):
    """Checkpoint com prefixo "model." e pesos transpostos em layers.0."""

    def sanitize(self, weights):
        cleaned = {}
        for key, value in weights.items():
            key = key.replace("model.", "", 1)
            if key == "layers.0.weight":
                value = value.map(lambda t: t.t().contiguous())
            cleaned[key] = value
        return cleaned


def reference_tensors(seed=0):
    torch.manual_seed(seed)
    return {
        "embed.weight": torch.randn(16, DIM),
        "layers.0.weight": torch.randn(DIM, DIM),
        "layers.0.bias": torch.randn(DIM),
        "layers.1.weight": torch.randn(DIM, DIM),
        "layers.1.bias": torch.randn(DIM),
        "norm.weight": torch.randn(DIM),
        "norm.bias": torch.randn(DIM),
    }


def write_checkpoint(directory, tensors, quantize=()):
    """Dois shards + config.json; módulos em `quantize` vão pré-quantizados."""
    directory.mkdir(parents=True, exist_ok=True)
    flat = dict(tensors)
    quantizer = GroupQuantizer(group_size=64, bits=4)
    for path in quantize:
        qt = quantizer.quantize(flat.pop(f"{path}.weight"))
        flat[f"{path}.weight"] = qt.weight
        flat[f"{path}.scales"] = qt.scales
        flat[f"{path}.biases"] = qt.biases

    keys = sorted(flat)
    half = len(keys) // 2
    save_file({k: flat[k] for k in keys[:half]}, str(directory / "model-00001-of-00002.safetensors"))
    save_file({k: flat[k] for k in keys[half:]}, str(directory / "model-00002-of-00002.safetensors"))
    (directory / "config.json").write_text(json.dumps({"quantization": {"group_size": 64, "bits": 4}}))
    return flat


def test_local_directory_end_to_end(tmp_path):
    tensors = reference_tensors()
    write_checkpoint(tmp_path, tensors)
    model = TinyLM()

    report = load_weights(tmp_path, model)

    assert report.num_tensors == len(tensors)
    assert report.quantized_modules == []
    assert pending_weights(model) == []
    for key, value in model.state_dict().items():
        assert torch.equal(value, tensors[key]), key


def test_offline_remote_with_quantized_module(tmp_path, monkeypatch):
    print("--- End-to-end: offline Hub id + quantized layer ---")
    cache = tmp_path / "hub"
    repo = cache / "models--org--model"
    (repo / "refs").mkdir(parents=True)
    (repo / "refs" / "main").write_text("abc123")
    tensors = reference_tensors()
    flat = write_checkpoint(repo / "snapshots" / "abc123", tensors, quantize=["layers.1"])

    def offline(**kwargs):
        raise ConnectionError("The Internet connection appears to be offline.")

    monkeypatch.setattr(download_module, "snapshot_download", offline)

    model = TinyLM()
    report = load_model(
        RemoteId("org/model"),
        model,
        QuantizationSpec(group_size=64, bits=4),
        downloader=ModelDownloader(cache_dir=cache),
    )

    assert report.quantized_modules == ["layers.1"]
    assert isinstance(model.layers[1], QuantizedLinear)
    assert isinstance(model.layers[0], nn.Linear)
    assert isinstance(model.embed, nn.Embedding)
    assert pending_weights(model) == []

    assert torch.equal(model.layers[1].weight, flat["layers.1.weight"])
    assert torch.equal(model.layers[0].weight, tensors["layers.0.weight"])

    # A camada quantizada aproxima o peso original
    w_hat = model.layers[1].materialize_weight()
    assert torch.allclose(w_hat, tensors["layers.1.weight"], atol=0.5)

    out = model(torch.tensor([[1, 2, 3]]))
    assert out.shape == (1, 3, DIM)


def test_sanitize_hook_runs_before_binding(tmp_path):
    tensors = reference_tensors()
    stored = {f"model.{k}": v for k, v in tensors.items()}
    stored["model.layers.0.weight"] = tensors["layers.0.weight"].t().contiguous()
    save_file(stored, str(tmp_path / "model.safetensors"))

    model = SanitizingLM()
    load_weights(tmp_path, model)

    assert torch.equal(model.layers[0].weight, tensors["layers.0.weight"])
    assert torch.equal(model.norm.bias, tensors["norm.bias"])


def test_explicit_sanitize_overrides_model_hook(tmp_path):
    tensors = reference_tensors()
    save_file({f"prefix.{k}": v for k, v in tensors.items()}, str(tmp_path / "model.safetensors"))
    calls = []

    def strip_prefix(weights):
        calls.append(len(weights))
        return {k[len("prefix."):]: v for k, v in weights.items()}

    model = TinyLM()
    load_weights(tmp_path, model, sanitize=strip_prefix)

    assert calls == [len(tensors)]
    assert torch.equal(model.embed.weight, tensors["embed.weight"])


def test_structural_mismatch_aborts_before_binding(tmp_path):
    tensors = reference_tensors()
    del tensors["norm.bias"]
    write_checkpoint(tmp_path, tensors)
    model = TinyLM()
    before = model.norm.weight.detach().clone()

    with pytest.raises(StructuralMismatchError) as info:
        load_weights(tmp_path, model)

    assert info.value.missing == ["norm.bias"]
    assert torch.equal(model.norm.weight, before)


def test_without_quantization_spec_scales_are_unexpected(tmp_path):
    write_checkpoint(tmp_path, reference_tensors(), quantize=["layers.1"])

    with pytest.raises(StructuralMismatchError) as info:
        load_weights(tmp_path, TinyLM())

    assert info.value.unexpected == ["layers.1.biases", "layers.1.scales"]


def test_cancel_mid_materialization_leaves_model_untouched(tmp_path, monkeypatch):
    write_checkpoint(tmp_path, reference_tensors())
    model = TinyLM()
    before = {k: v.clone() for k, v in model.state_dict().items()}
    token = CancellationToken()

    original_open = materializer_module.SafeTensorReader.open
    opened = []

    def tracking_open(path):
        opened.append(path.name)
        if len(opened) == 1:
            token.cancel()
        return original_open(path)

    monkeypatch.setattr(materializer_module.SafeTensorReader, "open", staticmethod(tracking_open))

    with pytest.raises(LoadCancelled):
        load_weights(tmp_path, model, QuantizationSpec(), cancel_token=token)

    assert opened == ["model-00001-of-00002.safetensors"]
    assert pending_weights(model) == []
    for key, value in model.state_dict().items():
        assert torch.equal(value, before[key])


def test_weight_loader_from_config(tmp_path):
    tensors = reference_tensors()
    write_checkpoint(tmp_path, tensors, quantize=["layers.0"])
    config = LoadConfig.from_dict({
        "model": str(tmp_path),
        "quantization": QuantizationSpec.from_model_config(tmp_path).to_dict(),
        "batch_size": 3,
    })

    model = TinyLM()
    report = WeightLoader(config=config).load(model)

    assert config.to_dict()["quantization"] == {"group_size": 64, "bits": 4}
    assert report.quantized_modules == ["layers.0"]
    assert isinstance(model.layers[0], QuantizedLinear)
    assert pending_weights(model) == []


def test_sanitized_handle_with_wrong_shape_is_rejected(tmp_path):
    write_checkpoint(tmp_path, reference_tensors())
    model = TinyLM()
    before = {k: v.clone() for k, v in model.state_dict().items()}

    def truncate(weights):
        weights["layers.0.weight"] = weights["layers.0.weight"].map(lambda t: t[: DIM // 2])
        return weights

    with pytest.raises(StructuralMismatchError) as info:
        load_weights(tmp_path, model, sanitize=truncate)

    assert info.value.shape_mismatches == [("layers.0.weight", (DIM, DIM), (DIM // 2, DIM))]
    assert pending_weights(model) == []
    for key, value in model.state_dict().items():
        assert torch.equal(value, before[key]), key


def test_cancel_during_evaluation_restores_model(tmp_path):
    print("--- Cancel between eval batches ---")
    write_checkpoint(tmp_path, reference_tensors(), quantize=["layers.1"])
    model = TinyLM()
    original_layer = model.layers[1]
    before = {k: v.clone() for k, v in model.state_dict().items()}
    token = CancellationToken()

    def cancel_on_first_force(weights):
        def force_then_cancel(t):
            token.cancel()
            return t
        # embed.weight é o primeiro slot forçado
        weights["embed.weight"] = weights["embed.weight"].map(force_then_cancel)
        return weights

    with pytest.raises(LoadCancelled):
        load_weights(
            tmp_path,
            model,
            QuantizationSpec(),
            sanitize=cancel_on_first_force,
            cancel_token=token,
            batch_size=1,
        )

    assert model.layers[1] is original_layer
    assert isinstance(model.layers[1], nn.Linear)
    assert pending_weights(model) == []
    assert all("_pending_weights" not in m.__dict__ for m in model.modules())
    for key, value in model.state_dict().items():
        assert torch.equal(value, before[key]), key
