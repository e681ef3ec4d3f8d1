import hashlib
import json
import os
import pytest
from click.testing import CliRunner
from pkgfetch.cli import cli as cli_module
from pkgfetch.cli.cli import cli
from pkgfetch.crypto import KeySet
from pkgfetch.pkg import Pkg
from helpers_pkg import FakePkgServer, BASE_URL

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ["PKGFETCH_CONFIG", "PKGFETCH_DESTINATION_DIR", "PKGFETCH_KEYS_DIRS"]:
        monkeypatch.delenv(name, raising=False)

def keygen(runner:CliRunner, out_dir:str):
    result = runner.invoke(cli, ["keygen", "--out-dir", out_dir])
    assert result.exit_code == 0, result.output
    assert "did:key:" in result.output

def build(runner:CliRunner, tmp_path, key_dir:str) -> str:
    (tmp_path / "alpine.tar").write_bytes(b"alpine image" * 100)
    (tmp_path / "nginx.tar").write_bytes(b"nginx image" * 100)
    out_dir = str(tmp_path / "out")
    result = runner.invoke(cli, [
        "build",
        "--author", "someone@example.com",
        "--image", f"alpine:3.5={tmp_path / 'alpine.tar'}",
        "--image", f"nginx:latest={tmp_path / 'nginx.tar'}",
        "--source-base", BASE_URL,
        "--key", os.path.join(key_dir, "private.key"),
        "--out-dir", out_dir,
    ])
    assert result.exit_code == 0, result.output
    return out_dir

def test_keygen(tmp_path):
    out_dir = str(tmp_path / "keys")
    keygen(CliRunner(), out_dir)
    assert sorted(os.listdir(out_dir)) == ["private.key", "public.did", "public.pem"]

def test_build(tmp_path):
    runner = CliRunner()
    key_dir = str(tmp_path / "keys")
    keygen(runner, key_dir)
    out_dir = build(runner, tmp_path, key_dir)

    meta_files = [f for f in os.listdir(out_dir) if f.endswith(".json")]
    assert len(meta_files) == 1
    meta_path = os.path.join(out_dir, meta_files[0])
    with open(meta_path, 'rb') as f:
        pkg_bytes = f.read()
    with open(f"{meta_path}.sig", 'r') as f:
        signature = f.read()

    KeySet.load([key_dir]).verify_any(hashlib.sha256(pkg_bytes).digest(), [signature])
    pkg = Pkg.from_bytes(pkg_bytes)
    assert set(pkg.meta.provides.images.values()) == {"alpine:3.5", "nginx:latest"}
    for part_id, part in pkg.parts.items():
        assert part.sources[0].url == f"{BASE_URL}/{pkg.id}/{part_id}"
        assert os.path.getsize(os.path.join(out_dir, pkg.id, part_id)) == part.expected_bytes

def test_build_rejects_malformed_image(tmp_path):
    runner = CliRunner()
    key_dir = str(tmp_path / "keys")
    keygen(runner, key_dir)
    result = runner.invoke(cli, [
        "build", "--author", "someone", "--image", "alpine.tar", "--source-base", BASE_URL,
        "--key", os.path.join(key_dir, "private.key"), "--out-dir", str(tmp_path / "out")])
    assert result.exit_code != 0
    assert "IMAGE_NAME=FILE" in result.output

def test_fetch_requires_signature(tmp_path):
    result = CliRunner().invoke(cli, ["fetch", f"{BASE_URL}/some.json", "--dest", str(tmp_path), "--keys", str(tmp_path)])
    assert result.exit_code != 0
    assert "signature" in result.output

def test_build_then_fetch(tmp_path, monkeypatch):
    runner = CliRunner()
    key_dir = str(tmp_path / "keys")
    keygen(runner, key_dir)
    out_dir = build(runner, tmp_path, key_dir)

    #serve everything that was built
    server = FakePkgServer()
    for root, _, files in os.walk(out_dir):
        for file_name in files:
            file_path = os.path.join(root, file_name)
            with open(file_path, 'rb') as f:
                server.files[os.path.relpath(file_path, out_dir)] = f.read()
    monkeypatch.setattr(cli_module, "default_client_factory", server.client_factory)

    meta_file = next(f for f in os.listdir(out_dir) if f.endswith(".json"))
    dest = str(tmp_path / "dest")
    result = runner.invoke(cli, [
        "fetch", f"{BASE_URL}/{meta_file}",
        "--signature-file", os.path.join(out_dir, f"{meta_file}.sig"),
        "--dest", dest,
        "--keys", os.path.join(key_dir, "public.did"),
    ])
    assert result.exit_code == 0, result.output

    fetched = json.loads(result.output[result.output.index("{"):])
    assert set(fetched.keys()) == {"alpine:3.5", "nginx:latest"}
    with open(fetched["alpine:3.5"], 'rb') as f:
        assert f.read() == b"alpine image" * 100
