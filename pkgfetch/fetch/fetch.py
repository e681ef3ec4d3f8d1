from __future__ import annotations
import asyncio
import hashlib
import logging
import os
import aiofiles
import httpx
from pydantic import ValidationError
from pkgfetch.pkg import Pkg, is_safe_file_name
from pkgfetch.crypto import KeySet, VerificationError, KeyLoadError, SignatureDecodeError
from .errors import *
from .http_clients import HttpClientFactory, DomainClientProducer, DomainAuth, make_domain_client_producer, url_domain
from .fetch_parts import fetch_and_verify_parts, DEFAULT_PART_WORKERS

logger = logging.getLogger(__name__)

# Fetches a Pkg meta file, verifies it, and then fetches and verifies all the parts of the Pkg.
#
# On-disk layout in the destination directory:
#   <destination_dir>/<pkg id>.json       the raw, verified Pkg meta file
#   <destination_dir>/<pkg id>/<part id>  one file per verified part

_DIR_MODE = 0o700
_FILE_MODE = 0o600

#==============================================================
# Pkg meta
#==============================================================
async def _write_file(file_path:str, content:bytes):
    #this'll overwrite
    async with aiofiles.open(file_path, 'wb') as f:
        await f.write(content)
    os.chmod(file_path, _FILE_MODE)

async def load_keyset(keys_dirs:list[str]) -> KeySet:
    try:
        return await asyncio.to_thread(KeySet.load, keys_dirs)
    except KeyLoadError as e:
        raise PkgMetaError(f"Unable to load the keys to verify Pkgs from {keys_dirs}", e) from e

async def fetch_pkg_meta(client:httpx.AsyncClient, keyset:KeySet, pkg_url:str, pkg_url_signature:str, destination_dir:str) -> Pkg:
    """Fetches and verifies the Pkg meta file. Side effect: stores the meta file in destination_dir."""
    logger.debug(f"Fetching Pkg from {pkg_url}")

    try:
        response = await client.get(pkg_url)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise PkgMetaError(f"Unable to fetch Pkg meta from {pkg_url}", e) from e

    if response.status_code != 200:
        raise PkgMetaError(f"Unexpected status code in response to Pkg fetch from {pkg_url}: {response.status_code}")
    raw_body = response.content

    content_hash = hashlib.sha256(raw_body).digest()
    try:
        await asyncio.to_thread(keyset.verify_any, content_hash, [pkg_url_signature])
    except VerificationError as e:
        raise PkgMetaVerificationError(f"Pkg signature not verified for {pkg_url}", e) from e
    except SignatureDecodeError as e:
        raise PkgMetaVerificationError(f"Pkg signature is malformed for {pkg_url}", e) from e

    try:
        pkg = Pkg.from_bytes(raw_body)
    except ValidationError as e:
        raise PkgMetaError(f"Unable to parse Pkg meta from {pkg_url}", e) from e

    if not is_safe_file_name(pkg.id):
        raise PkgMetaError(f"Pkg id '{pkg.id}' cannot be used as a file name")

    meta_path = os.path.join(destination_dir, f"{pkg.id}.json")
    try:
        await _write_file(meta_path, raw_body)
    except OSError as e:
        raise PkgMetaError(f"Unable to write Pkg meta to {meta_path}", e) from e
    logger.info(f"Wrote Pkg meta to {meta_path}")
    return pkg

def precheck_pkg_parts(pkg:Pkg):
    """Cheap, local checks of the Pkg meta before any part is fetched."""
    image_names = list(pkg.meta.provides.images.values())
    if len(image_names) != len(set(image_names)):
        duplicates = sorted({name for name in image_names if image_names.count(name) > 1})
        raise PkgPrecheckError(f"Error in pkg file: meta.provides maps more than one part to the same image name: {duplicates}")
    for part_id, part in pkg.parts.items():
        repo_tag = pkg.image_name(part_id)
        if repo_tag is None:
            raise PkgPrecheckError(f"Error in pkg file: meta.provides is expected to contain metadata about each part and it is missing info about part {part_id}")
        if not is_safe_file_name(part_id):
            raise PkgPrecheckError(f"Error in pkg file: part id '{part_id}' cannot be used as a file name")
        if part.id != part_id:
            raise PkgPrecheckError(f"Error in pkg file: part listed as {part_id} has id {part.id}")
        if len(part.sources) == 0:
            raise PkgPrecheckError(f"Error in pkg file: part {part_id} has no sources")
        logger.debug(f"Precheck of container {repo_tag} (Pkg part id: {part_id}) passed, will fetch it")

#==============================================================
# Pkg content
#==============================================================
def _mkdirs(dir_path:str):
    os.makedirs(dir_path, mode=_DIR_MODE, exist_ok=True)

async def fetch_pkg_content(client_producer:DomainClientProducer, pkg:Pkg, pkg_dir:str, keyset:KeySet, part_workers:int=DEFAULT_PART_WORKERS) -> dict[str, str]:
    """Fetches and verifies all parts of an (already verified) Pkg into pkg_dir.

    Returns the absolute path of each part by its docker image name.
    A new client is produced for each source, right before it is fetched from.
    """
    precheck_pkg_parts(pkg)
    try:
        _mkdirs(pkg_dir)
    except OSError as e:
        raise PkgMetaError(f"Unable to create Pkg directory {pkg_dir}", e) from e

    fetched = await fetch_and_verify_parts(
        lambda url: client_producer(url_domain(url)),
        pkg,
        pkg_dir,
        keyset,
        part_workers)

    return {pkg.image_name(part_id): path for part_id, path in fetched.items()}

async def pkg_fetch(
        client_factory:HttpClientFactory,
        pkg_url:str,
        pkg_url_signature:str,
        destination_dir:str,
        keys_dirs:list[str],
        per_domain_auth:DomainAuth|None=None,
        part_timeout_seconds:float|None=None,
        part_workers:int=DEFAULT_PART_WORKERS,
        ) -> dict[str, str]:
    """Fetches the Pkg meta file at pkg_url, verifies it with pkg_url_signature, then fetches and verifies the parts of the Pkg.

    Returns the absolute path of each verified part, by the docker image name the part provides.
    Raises a PkgFetchError (a PkgAggregateFetchError if parts failed) otherwise; never a partial result.
    """
    if not pkg_url_signature:
        raise PkgSignatureRequiredError("Disabling Pkg file signature checking not supported")

    try:
        _mkdirs(destination_dir)
    except OSError as e:
        raise PkgMetaError(f"Unable to create destination directory {destination_dir}", e) from e

    keyset = await load_keyset(keys_dirs)

    pkg_url = str(pkg_url)
    meta_client_producer = make_domain_client_producer(client_factory, per_domain_auth)
    try:
        meta_client = meta_client_producer(url_domain(pkg_url))
    except httpx.InvalidURL as e:
        raise PkgMetaError(f"Invalid Pkg url {pkg_url}", e) from e
    async with meta_client as client:
        pkg = await fetch_pkg_meta(client, keyset, pkg_url, pkg_url_signature, destination_dir)

    client_producer = make_domain_client_producer(client_factory, per_domain_auth, part_timeout_seconds)
    pkg_dir = os.path.join(destination_dir, pkg.id)
    fetched = await fetch_pkg_content(client_producer, pkg, pkg_dir, keyset, part_workers)
    logger.info(f"Fetched and verified {len(fetched)} part(s) of Pkg {pkg.id}")
    return fetched

def pkg_fetch_sync(*args, **kwargs) -> dict[str, str]:
    """Runs pkg_fetch in a new event loop. Same arguments as pkg_fetch."""
    return asyncio.run(pkg_fetch(*args, **kwargs))
