"""Tests for the run-scoped artifact store."""
import pytest

from shipci.artifacts import ArtifactStore, FileArtifactBackend
from shipci.errors import ConflictError, NotReadyError
from shipci.model import JobState


def test_publish_is_write_once(artifacts):
    artifacts.publish("linux", "fishnet-linux", {"fishnet": b"elf"})
    with pytest.raises(ConflictError, match="already published by job 'linux'"):
        artifacts.publish("windows", "fishnet-linux", {"fishnet.exe": b"pe"})


def test_fetch_before_producer_succeeds(artifacts):
    artifacts.publish("linux", "bin", {"fishnet": b"elf"})
    artifacts.set_job_state("linux", JobState.RUNNING)
    with pytest.raises(NotReadyError, match="running"):
        artifacts.fetch("bin", requester="release")

    artifacts.set_job_state("linux", JobState.SUCCEEDED)
    assert artifacts.fetch("bin", requester="release").file().data == b"elf"


def test_producer_reads_its_own_artifact(artifacts):
    artifacts.publish("linux", "bin", {"fishnet": b"elf"})
    assert artifacts.fetch("bin", requester="linux").producer == "linux"


def test_failed_producer_never_becomes_ready(artifacts):
    artifacts.publish("windows", "bin", {"x": b"1"})
    artifacts.set_job_state("windows", JobState.FAILED)
    with pytest.raises(NotReadyError):
        artifacts.fetch("bin")


def test_unknown_artifact(artifacts):
    with pytest.raises(NotReadyError, match="has not been published"):
        artifacts.fetch("nope")


def test_fetch_all_by_glob(artifacts):
    for job in ("linux", "windows", "macos"):
        artifacts.publish(job, f"fishnet-{job}", {"bin": job.encode()})
        artifacts.set_job_state(job, JobState.SUCCEEDED)
    artifacts.publish("docs", "manual", {"index.html": b"<html>"})
    artifacts.set_job_state("docs", JobState.SUCCEEDED)

    names = [a.name for a in artifacts.fetch_all("fishnet-*")]
    assert names == ["fishnet-linux", "fishnet-macos", "fishnet-windows"]


def test_invalid_names_and_paths(artifacts):
    with pytest.raises(ValueError):
        artifacts.publish("a", "../escape", {"f": b""})
    with pytest.raises(ValueError):
        artifacts.publish("a", "ok", {"../f": b""})
    with pytest.raises(ValueError):
        artifacts.publish("a", "empty", {})


def test_file_selection():
    store = ArtifactStore()
    art = store.publish("a", "multi", {"one": b"1", "dir/two": b"2"})
    assert art.file("dir/two").data == b"2"
    with pytest.raises(ValueError):
        art.file()
    with pytest.raises(KeyError):
        art.file("three")


def test_publish_paths_and_write_to(tmp_path):
    ws = tmp_path / "ws"
    (ws / "dist" / "sub").mkdir(parents=True)
    (ws / "dist" / "app").write_bytes(b"app")
    (ws / "dist" / "sub" / "lib").write_bytes(b"lib")
    (ws / "README").write_text("readme")

    store = ArtifactStore()
    art = store.publish_paths("linux", "bundle", ["dist", "README"], base=ws)
    assert sorted(f.path for f in art.files) == ["README", "dist/app", "dist/sub/lib"]

    written = art.write_to(tmp_path / "out")
    assert len(written) == 3
    assert (tmp_path / "out" / "dist" / "sub" / "lib").read_bytes() == b"lib"


def test_publish_paths_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ArtifactStore().publish_paths("linux", "x", ["nope"], base=tmp_path)


def test_file_backend_persists(tmp_path):
    store = ArtifactStore(FileArtifactBackend(tmp_path / "run"))
    store.publish("linux", "bin", {"fishnet": b"elf"})
    store.set_job_state("linux", JobState.SUCCEEDED)

    assert (tmp_path / "run" / "bin" / "artifact.json").exists()
    art = store.fetch("bin")
    assert art.file().data == b"elf"
    assert FileArtifactBackend(tmp_path / "run").get("bin").producer == "linux"


def test_publish_paths_rejects_clashing_names(tmp_path):
    for platform in ("linux", "windows"):
        (tmp_path / platform).mkdir()
        (tmp_path / platform / "fishnet").write_bytes(platform.encode())
    store = ArtifactStore()
    with pytest.raises(ValueError, match="two files named 'fishnet'"):
        store.publish_paths("pack", "bins", ["linux/fishnet", "windows/fishnet"], base=tmp_path)
    assert store.names() == []
