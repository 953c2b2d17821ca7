import io
from pathlib import Path

import pytest
from huggingface_hub.errors import LocalEntryNotFoundError, RepositoryNotFoundError

import llm_weight_loader.hub.download as download_module
from llm_weight_loader.hub import (
    LocalDirectory,
    ModelDownloader,
    RemoteId,
    cache_directory,
    model_reference,
    resolve_model_directory,
)


class RepoNotFound(RepositoryNotFoundError):
    """Sem depender da assinatura do construtor do huggingface_hub."""

    def __init__(self):
        Exception.__init__(self, "401 Client Error: repository not found")


class NoLocalEntry(LocalEntryNotFoundError):
    def __init__(self):
        Exception.__init__(self, "cannot reach the Hub and no cached snapshot")


def fake_cache(tmp_path, repo_id="org/model", commit="abc123"):
    repo = tmp_path / ("models--" + repo_id.replace("/", "--"))
    (repo / "refs").mkdir(parents=True)
    (repo / "refs" / "main").write_text(commit + "\n")
    snapshot = repo / "snapshots" / commit
    snapshot.mkdir(parents=True)
    return snapshot


def raising(exc):
    def fake_snapshot_download(**kwargs):
        raise exc
    return fake_snapshot_download


def test_local_directory_skips_network(tmp_path, monkeypatch):
    def fail(**kwargs):
        raise AssertionError("snapshot_download não deveria ser chamado")

    monkeypatch.setattr(download_module, "snapshot_download", fail)

    assert resolve_model_directory(LocalDirectory(tmp_path)) == tmp_path


def test_remote_id_requests_filtered_snapshot(tmp_path, monkeypatch):
    calls = []

    def fake_snapshot_download(**kwargs):
        calls.append(kwargs)
        return str(tmp_path / "snap")

    monkeypatch.setattr(download_module, "snapshot_download", fake_snapshot_download)

    path = ModelDownloader(cache_dir=tmp_path).resolve(RemoteId("org/model"))

    assert path == tmp_path / "snap"
    assert calls[0]["repo_id"] == "org/model"
    assert calls[0]["allow_patterns"] == ["*.safetensors", "*.json"]
    assert "tqdm_class" not in calls[0]


def test_progress_callback_is_forwarded(tmp_path, monkeypatch):
    progress = []

    def fake_snapshot_download(tqdm_class=None, **kwargs):
        bar = tqdm_class(total=3, file=io.StringIO())
        bar.update(1)
        bar.update(2)
        bar.close()
        return str(tmp_path)

    monkeypatch.setattr(download_module, "snapshot_download", fake_snapshot_download)

    resolve_model_directory(RemoteId("org/model"), lambda done, total: progress.append((done, total)))

    assert progress == [(1, 3), (3, 3)]


@pytest.mark.parametrize("exc", [RepoNotFound(), NoLocalEntry(), ConnectionError("offline")])
def test_recoverable_failures_fall_back_to_cache(tmp_path, monkeypatch, exc):
    snapshot = fake_cache(tmp_path)
    monkeypatch.setattr(download_module, "snapshot_download", raising(exc))

    path = resolve_model_directory(RemoteId("org/model"), cache_dir=tmp_path)

    assert path == snapshot


def test_fallback_without_refs_returns_repo_folder(tmp_path, monkeypatch):
    monkeypatch.setattr(download_module, "snapshot_download", raising(RepoNotFound()))

    path = resolve_model_directory(RemoteId("org/missing"), cache_dir=tmp_path)

    assert path == tmp_path / "models--org--missing"


@pytest.mark.parametrize("exc", [RuntimeError("disk full"), ValueError("bad revision"), PermissionError("denied")])
def test_other_failures_propagate(tmp_path, monkeypatch, exc):
    fake_cache(tmp_path)
    monkeypatch.setattr(download_module, "snapshot_download", raising(exc))

    with pytest.raises(type(exc)):
        resolve_model_directory(RemoteId("org/model"), cache_dir=tmp_path)


def test_cache_directory_layout(tmp_path):
    snapshot = fake_cache(tmp_path, repo_id="mlx-community/tiny", commit="deadbeef")
    assert cache_directory("mlx-community/tiny", cache_dir=tmp_path) == snapshot
    assert cache_directory("mlx-community/tiny", cache_dir=tmp_path, revision="dev") == snapshot.parent.parent


def test_model_reference_parsing(tmp_path):
    assert model_reference("org/model") == RemoteId("org/model")
    assert model_reference(str(tmp_path)) == LocalDirectory(Path(str(tmp_path)))
    assert isinstance(model_reference("./weights"), LocalDirectory)
    with pytest.raises(ValueError):
        model_reference("  ")
