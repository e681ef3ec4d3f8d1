import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from helpers_pkg import FakePkgServer, write_public_key

@pytest.fixture
def server() -> FakePkgServer:
    return FakePkgServer()

@pytest.fixture
def private_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()

@pytest.fixture
def keys_dir(tmp_path, private_key) -> str:
    keys_dir = str(tmp_path / "keys")
    write_public_key(private_key, keys_dir)
    return keys_dir

@pytest.fixture
def destination_dir(tmp_path) -> str:
    return str(tmp_path / "destination")
