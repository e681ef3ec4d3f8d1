import asyncio
import os
import pytest
from pkgfetch.cli.fetch_config import *
from pkgfetch.fetch import DEFAULT_TIMEOUT_SECONDS, DEFAULT_PART_WORKERS
from pkgfetch.fetchqueue import Task
from helpers_pkg import publish_pkg

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [ENV_CONFIG, ENV_DESTINATION_DIR, ENV_KEYS_DIRS]:
        monkeypatch.delenv(name, raising=False)

def test_loads_config():
    config = loads_config("""
[fetch]
destination_dir = "/var/pkgfetch/pkgs"
keys_dirs = ["/etc/pkgfetch/keys", "/etc/pkgfetch/more_keys"]
timeout_seconds = 5
part_timeout_seconds = 300
part_workers = 8

[pool]
workers = 4
max_tries = 5

[auth."registry.example.com"]
Authorization = "Bearer abc"
""")
    assert config.destination_dir == "/var/pkgfetch/pkgs"
    assert config.keys_dirs == ["/etc/pkgfetch/keys", "/etc/pkgfetch/more_keys"]
    assert config.timeout_seconds == 5.0
    assert config.part_timeout_seconds == 300.0
    assert config.part_workers == 8
    assert config.pool.workers == 4
    assert config.pool.max_tries == 5
    assert config.pool.fetch_buffer == PoolConfig().fetch_buffer
    assert config.auth == {"registry.example.com": {"Authorization": "Bearer abc"}}

def test_loads_empty_config():
    config = loads_config("")
    assert config.destination_dir is None
    assert config.keys_dirs == []
    assert config.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    assert config.part_timeout_seconds is None
    assert config.part_workers == DEFAULT_PART_WORKERS
    assert config.pool == PoolConfig()
    assert config.auth == {}

def test_loads_config_with_single_keys_dir():
    config = loads_config('[fetch]\nkeys_dirs = "/etc/pkgfetch/keys"\n')
    assert config.keys_dirs == ["/etc/pkgfetch/keys"]

@pytest.mark.parametrize("toml", [
    '[other]\nfoo = 1\n',
    'fetch = 3\n',
    '[fetch]\ndestination = "/tmp"\n',
    '[pool]\nthreads = 4\n',
    '[auth]\n"registry.example.com" = "Bearer abc"\n',
    '[fetch]\npart_workers = 0\n',
    '[fetch]\ntimeout_seconds = -1\n',
    '[pool]\nworkers = 0\n',
    '[pool]\nmax_tries = 0\n',
])
def test_loads_invalid_config(toml):
    with pytest.raises(ValueError):
        loads_config(toml)

def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "pkgfetch.toml"
    config_path.write_text('[fetch]\ndestination_dir = "/from/file"\nkeys_dirs = ["/keys/from/file"]\n')
    monkeypatch.setenv(ENV_CONFIG, str(config_path))

    config = load_config()
    assert config.destination_dir == "/from/file"
    assert config.keys_dirs == ["/keys/from/file"]

    monkeypatch.setenv(ENV_DESTINATION_DIR, "/from/env")
    monkeypatch.setenv(ENV_KEYS_DIRS, os.pathsep.join(["/keys/one", "/keys/two"]))
    config = load_config()
    assert config.destination_dir == "/from/env"
    assert config.keys_dirs == ["/keys/one", "/keys/two"]

def test_load_config_without_file():
    config = load_config()
    assert config.destination_dir is None

def test_pool_from_config_requires_destination_and_keys():
    with pytest.raises(ValueError):
        pool_from_config(loads_config('[fetch]\nkeys_dirs = ["/keys"]\n'))
    with pytest.raises(ValueError):
        pool_from_config(loads_config('[fetch]\ndestination_dir = "/dest"\n'))

async def test_pool_from_config(server, private_key, keys_dir, destination_dir):
    config = loads_config(f"""
[fetch]
destination_dir = "{destination_dir}"
keys_dirs = ["{keys_dir}"]
part_timeout_seconds = 120
part_workers = 1

[pool]
workers = 3
fetch_buffer = 5
max_tries = 2
retry_delay_seconds = 0

[auth."pkgs.test"]
Authorization = "Bearer abc"
""")
    pool = pool_from_config(config, server.client_factory)
    assert pool.workers == 3
    assert pool.part_workers == 1
    assert pool.max_tries == 2
    assert pool.destination_dir == os.path.abspath(destination_dir)

    pkg, _, _ = publish_pkg(server, private_key, {"alpine:3.5": b"alpine image content" * 10})
    runner = asyncio.create_task(pool.start())
    await pool.wait_until_running()
    try:
        task = Task(pkg)
        pool.enqueue_fetch(task)
        await task.wait_for_completion(10)
    finally:
        pool.stop()
        await runner

    assert task.succeeded
    assert server.client_timeouts == [120]
    assert all(headers["authorization"] == "Bearer abc" for _, headers in server.request_headers)
