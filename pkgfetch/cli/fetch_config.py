from dataclasses import dataclass, field, asdict
import os
import tomlkit
from tomlkit import TOMLDocument
from pkgfetch.fetch import (DEFAULT_TIMEOUT_SECONDS, DEFAULT_PART_WORKERS, DomainAuth, HttpClientFactory, 
                            default_client_factory, make_domain_client_producer)
from pkgfetch.fetchqueue import fetch_queue

# Functions to work with a fetch config file.
# Utilizes https://github.com/sdispater/tomlkit to work with TOML data.
#
# The expected toml format is:
# --------------------------
# [fetch]
# destination_dir = "/var/pkgfetch/pkgs"
# keys_dirs = ["/etc/pkgfetch/keys"] #directories or single key files
# timeout_seconds = 10 #for the Pkg meta file
# part_timeout_seconds = 300 #for each part, parts are large
# part_workers = 4
#
# [pool] #optional
# workers = 2
# fetch_buffer = 100
# cancelation_buffer = 100
# cancelation_expiry_seconds = 300
# max_tries = 3
# retry_delay_seconds = 1.0
#
# [auth."registry.example.com"] #optional, headers added to requests for that domain
# Authorization = "Bearer abc"
# --------------------------
#
# The environment can override the config: PKGFETCH_DESTINATION_DIR, PKGFETCH_KEYS_DIRS (os.pathsep separated).

ENV_CONFIG = "PKGFETCH_CONFIG"
ENV_DESTINATION_DIR = "PKGFETCH_DESTINATION_DIR"
ENV_KEYS_DIRS = "PKGFETCH_KEYS_DIRS"

@dataclass
class PoolConfig:
    workers:int = fetch_queue.DEFAULT_WORKERS
    fetch_buffer:int = fetch_queue.MAX_FETCHES_BUFFER
    cancelation_buffer:int = fetch_queue.MAX_CANCELATIONS_BUFFER
    cancelation_expiry_seconds:float = fetch_queue.DEFAULT_CANCELATION_EXPIRY_SECONDS
    max_tries:int = fetch_queue.DEFAULT_MAX_TRIES
    retry_delay_seconds:float = fetch_queue.DEFAULT_RETRY_DELAY_SECONDS

@dataclass
class FetchConfig:
    destination_dir:str|None = None
    keys_dirs:list[str] = field(default_factory=list)
    timeout_seconds:float = DEFAULT_TIMEOUT_SECONDS
    part_timeout_seconds:float|None = None
    part_workers:int = DEFAULT_PART_WORKERS
    pool:PoolConfig = field(default_factory=PoolConfig)
    auth:DomainAuth = field(default_factory=dict)

def load_config(toml_file_path:str|None=None) -> FetchConfig:
    """Loads the config file (if a path is given or set in the environment) and applies the environment overrides."""
    if toml_file_path is None:
        toml_file_path = os.getenv(ENV_CONFIG, None)
    if toml_file_path is None:
        config = FetchConfig()
    else:
        config = loads_config(_read_toml_file(toml_file_path))
    return _apply_env(config)

def pool_from_config(config:FetchConfig, client_factory:HttpClientFactory=default_client_factory) -> fetch_queue.FetchPool:
    """Creates a fetch pool from the [fetch] and [pool] sections. Parts are fetched with the per-domain auth of the config."""
    if config.destination_dir is None:
        raise ValueError("No destination_dir in the config.")
    if len(config.keys_dirs) == 0:
        raise ValueError("No keys_dirs in the config.")
    client_producer = make_domain_client_producer(client_factory, config.auth, config.part_timeout_seconds)
    return fetch_queue.new_pool(
        config.destination_dir,
        client_producer,
        config.keys_dirs,
        part_workers=config.part_workers,
        **asdict(config.pool))

def loads_config(toml:str|TOMLDocument) -> FetchConfig:
    if(isinstance(toml, str)):
        doc = _read_toml_string(toml)
    else:
        doc = toml
    _validate_doc(doc)
    values = doc.unwrap()

    fetch = values.get("fetch", {})
    keys_dirs = fetch.get("keys_dirs", [])
    if isinstance(keys_dirs, str):
        keys_dirs = [keys_dirs]

    config = FetchConfig(
        destination_dir=fetch.get("destination_dir", None),
        keys_dirs=list(keys_dirs),
        timeout_seconds=float(fetch.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        part_timeout_seconds=_optional_float(fetch.get("part_timeout_seconds", None)),
        part_workers=int(fetch.get("part_workers", DEFAULT_PART_WORKERS)),
        pool=PoolConfig(**values.get("pool", {})),
        auth={str(domain): {str(k): str(v) for k, v in headers.items()} for domain, headers in values.get("auth", {}).items()},
    )
    _validate_config(config)
    return config

def _optional_float(value) -> float|None:
    return None if value is None else float(value)

def _apply_env(config:FetchConfig) -> FetchConfig:
    destination_dir = os.getenv(ENV_DESTINATION_DIR, None)
    if destination_dir:
        config.destination_dir = destination_dir
    keys_dirs = os.getenv(ENV_KEYS_DIRS, None)
    if keys_dirs:
        config.keys_dirs = [p for p in keys_dirs.split(os.pathsep) if p]
    return config

def _read_toml_file(file_path) -> TOMLDocument:
    with open(file_path, 'r') as f:
        return _read_toml_string(f.read())

def _read_toml_string(toml_string) -> TOMLDocument:
    return tomlkit.loads(toml_string)

def _validate_doc(doc:TOMLDocument) -> None:
    valid_top_level_keys = ['fetch', 'pool', 'auth']
    for key in doc.keys():
        if key not in valid_top_level_keys:
            raise ValueError(f"Invalid top level key '{key}'. Valid keys are '{valid_top_level_keys}'.")

    def validate_table(name, valid_keys):
        t = doc.get(name, None)
        if t is None:
            return
        if not isinstance(t, dict):
            raise ValueError(f"The {name} entry is not a table. Use [{name}] to define it.")
        for key in t.keys():
            if key not in valid_keys:
                raise ValueError(f"Invalid {name} key '{key}'. Valid keys are '{valid_keys}'.")

    validate_table('fetch', ['destination_dir', 'keys_dirs', 'timeout_seconds', 'part_timeout_seconds', 'part_workers'])
    validate_table('pool', list(PoolConfig.__dataclass_fields__.keys()))

    auth = doc.get('auth', None)
    if auth is not None:
        for domain, headers in auth.items():
            if not isinstance(headers, dict):
                raise ValueError(f"Auth for domain '{domain}' must be a table of header names and values.")

def _validate_config(config:FetchConfig) -> None:
    if config.timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive.")
    if config.part_timeout_seconds is not None and config.part_timeout_seconds <= 0:
        raise ValueError("part_timeout_seconds must be positive.")
    if config.part_workers < 1:
        raise ValueError("part_workers must be at least 1.")
    if config.pool.workers < 1:
        raise ValueError("pool.workers must be at least 1.")
    if config.pool.fetch_buffer < 1 or config.pool.cancelation_buffer < 1:
        raise ValueError("pool buffers must hold at least 1 item.")
    if config.pool.max_tries < 1:
        raise ValueError("pool.max_tries must be at least 1.")
