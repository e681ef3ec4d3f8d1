from __future__ import annotations
import asyncio
import hashlib
import logging
import os
from typing import Callable
import aiofiles
import httpx
from pkgfetch.pkg import Pkg, DockerImagePart, PartSource
from pkgfetch.crypto import KeySet, VerificationError, SignatureDecodeError
from .errors import *
from .results import PartResult, PartResultCollector

logger = logging.getLogger(__name__)

ClientForUrl = Callable[[str], httpx.AsyncClient]

DEFAULT_PART_WORKERS = 4
_CHUNK_SIZE = 1024 * 1024
_AUTH_STATUS_CODES = (401, 403)

#==============================================================
# Fetch a single part
#==============================================================
def _remove_part_file(part_path:str, msg:str|None=None):
    if msg:
        logger.error(msg)
    try:
        os.remove(part_path)
    except FileNotFoundError:
        pass

def _part_is_on_disk(part_id:str, part_path:str, expected_bytes:int) -> bool:
    """Resume check: a part file of exactly the expected size is assumed complete. Its content is verified later."""
    try:
        size = os.stat(part_path).st_size
    except FileNotFoundError:
        return False
    except OSError as e:
        try:
            _remove_part_file(part_path, f"Error getting status for file {part_path} although it exists. Will attempt to delete it and continue. Error: {e}")
        except OSError as remove_err:
            raise PkgSourceError(part_id, f"Unable to remove unreadable part file {part_path}", remove_err) from remove_err
        return False

    if size == expected_bytes:
        logger.info(f"Part file {part_path} exists on disk and it has the appropriate size, skipping redownload")
        return True

    #TODO: resume with a range request for servers that support it
    try:
        _remove_part_file(part_path, f"Part file {part_path} exists on disk but it's not complete ({size} bytes and should be {expected_bytes} bytes). Deleting it and trying again")
    except OSError as e:
        raise PkgSourceError(part_id, f"Unable to remove incomplete part file {part_path}", e) from e
    return False

async def _download_from_source(client_for_url:ClientForUrl, source:PartSource, part_path:str, expected_bytes:int) -> tuple[int|None, int]:
    """Streams a source into the part file. Returns the response status code and the number of bytes written."""
    written = 0
    async with client_for_url(source.url) as client:
        async with client.stream("GET", source.url) as response:
            if response.status_code != 200:
                return response.status_code, 0
            async with aiofiles.open(part_path, 'wb') as f:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    await f.write(chunk)
                    written += len(chunk)
                    if written > expected_bytes:
                        #the source is sending more than expected, no need to read the rest
                        break
            os.chmod(part_path, 0o600)
            return response.status_code, written

async def fetch_pkg_part(
        client_for_url:ClientForUrl,
        part_id:str,
        part_path:str,
        expected_bytes:int,
        sources:tuple[PartSource, ...],
        ) -> bool:
    """Downloads a part to part_path, trying each source in order until one delivers exactly expected_bytes.

    Returns False if the part was already on disk (and was not downloaded), True if it was downloaded.
    Raises a PkgSourceFetchAuthError if all sources refused access, otherwise a PkgSourceFetchError if all sources failed.
    """
    if _part_is_on_disk(part_id, part_path, expected_bytes):
        return False

    failures = []
    for source in sources:
        try:
            status_code, written = await _download_from_source(client_for_url, source, part_path, expected_bytes)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            _remove_part_file(part_path, f"Failed to download part {part_path} from {source.url}. Error: {e}")
            failures.append((source.url, None, e))
            continue
        except OSError as e:
            _remove_part_file(part_path)
            raise PkgSourceError(part_id, f"Failed to write part {part_path} downloaded from {source.url}", e) from e

        if status_code != 200:
            logger.error(f"Failed to download part {part_path} from {source.url}. Response status: {status_code}")
            failures.append((source.url, status_code, None))
            continue

        if written != expected_bytes:
            #give the next source a shot
            _remove_part_file(part_path, f"Error in download and copy of part {part_path} from {source.url}: got {written} bytes, expected {expected_bytes} bytes")
            failures.append((source.url, status_code, None))
            continue

        logger.info(f"Successfully wrote {part_path} from {source.url}")
        return True

    details = ", ".join(f"{url} ({status if status is not None else err})" for url, status, err in failures)
    last_err = failures[-1][2] if failures else None
    if failures and all(status in _AUTH_STATUS_CODES for _, status, _ in failures):
        raise PkgSourceFetchAuthError(part_id, f"Failed to download part {part_path}, all sources denied access: {details}", last_err)
    raise PkgSourceFetchError(part_id, f"Failed to complete download of part {part_path} from any source: {details}", last_err)

#==============================================================
# Verify a single part
#==============================================================
def _hash_file(file_path:str) -> bytes:
    hasher = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b''):
            hasher.update(chunk)
    return hasher.digest()

async def verify_pkg_part(keyset:KeySet, part_id:str, part_path:str, sha256sum:str, signatures:tuple[str, ...]) -> None:
    """Checks the hash of the part file, then its signatures. A part that fails either check is deleted."""
    logger.debug(f"Verifying pkg part {part_path} with signatures {signatures}")

    try:
        content_hash = await asyncio.to_thread(_hash_file, part_path)
    except OSError as e:
        raise PkgSourceError(part_id, f"Unable to read part {part_path} to compute its hash", e) from e

    #check the hash first
    actual_sha256sum = content_hash.hex()
    if actual_sha256sum != sha256sum.lower():
        _remove_part_file(part_path)
        raise PkgPartIntegrityError(part_id, f"Mismatch between expected hash, {sha256sum} and actual hash, {actual_sha256sum} for {part_path}")

    try:
        await asyncio.to_thread(keyset.verify_any, content_hash, signatures)
    except VerificationError as e:
        _remove_part_file(part_path)
        raise PkgPartVerificationError(part_id, f"Failed to verify part: {part_path}", e) from e
    except SignatureDecodeError as e:
        _remove_part_file(part_path)
        raise PkgPartVerificationError(part_id, f"Malformed signature on part: {part_path}", e) from e

#==============================================================
# Fetch and verify all parts of a Pkg, with a bounded pool of workers
#==============================================================
async def _fetch_and_verify_part(client_for_url:ClientForUrl, keyset:KeySet, part_id:str, part:DockerImagePart, pkg_dir:str) -> str:
    #file extensions are not added, the part id is the file name
    part_path = os.path.join(pkg_dir, part_id)
    logger.debug(f"Fetching part {part_id} to {part_path}")
    downloaded = await fetch_pkg_part(client_for_url, part_id, part_path, part.expected_bytes, part.sources)
    logger.debug(f"Verifying part {part_id}")
    try:
        await verify_pkg_part(keyset, part_id, part_path, part.sha256sum, part.signatures)
    except (PkgPartIntegrityError, PkgPartVerificationError) as e:
        if downloaded:
            raise
        #the file on disk only had the right size, it was deleted by the failed verification, download it once more
        logger.warning(f"Part {part_id} found on disk failed verification, downloading it again. Error: {e}")
        await fetch_pkg_part(client_for_url, part_id, part_path, part.expected_bytes, part.sources)
        await verify_pkg_part(keyset, part_id, part_path, part.sha256sum, part.signatures)
    return os.path.abspath(part_path)

async def _part_worker(
        worker_name:str,
        part_queue:asyncio.Queue[tuple[str, DockerImagePart] | None],
        collector:PartResultCollector,
        client_for_url:ClientForUrl,
        keyset:KeySet,
        pkg_dir:str,
        ):
    while True:
        item = await part_queue.get()
        if item is None:
            break
        part_id, part = item
        try:
            path = await _fetch_and_verify_part(client_for_url, keyset, part_id, part, pkg_dir)
            await collector.put(PartResult(part_id, path=path))
        except PkgFetchError as e:
            logger.error(f"{worker_name}: part {part_id} failed: {e}")
            await collector.put(PartResult(part_id, error=e))
        except Exception as e:
            logger.exception(f"{worker_name}: unexpected error on part {part_id}")
            await collector.put(PartResult(part_id, error=PkgSourceError(part_id, f"Unexpected error handling part {part_id}", e)))

async def fetch_and_verify_parts(
        client_for_url:ClientForUrl,
        pkg:Pkg,
        pkg_dir:str,
        keyset:KeySet,
        part_workers:int=DEFAULT_PART_WORKERS,
        ) -> dict[str, str]:
    """Fetches and verifies all parts of the Pkg into pkg_dir. Returns the absolute paths of the parts by part id.

    The parts are processed concurrently by up to part_workers workers. Every part is processed, even if
    others fail; if any part failed, a PkgAggregateFetchError with the errors of all failed parts is raised.
    Files of successfully verified parts are left on disk in either case.
    """
    if len(pkg.parts) == 0:
        return {}
    if part_workers < 1:
        raise ValueError("part_workers must be at least 1")

    worker_count = min(part_workers, len(pkg.parts))
    part_queue:asyncio.Queue = asyncio.Queue(maxsize=worker_count)
    collector = PartResultCollector(len(pkg.parts))

    workers = [
        asyncio.create_task(
            _part_worker(f"part-worker-{i}", part_queue, collector, client_for_url, keyset, pkg_dir),
            name=f"part-worker-{pkg.id}-{i}")
        for i in range(worker_count)]
    try:
        for part_id, part in pkg.parts.items():
            await part_queue.put((part_id, part))
        for _ in workers:
            await part_queue.put(None)
        fetched, errors = await collector.collect()
        await asyncio.gather(*workers)
    finally:
        for worker in workers:
            if not worker.done():
                worker.cancel()

    if len(errors) > 0:
        raise PkgAggregateFetchError(errors)
    return fetched
