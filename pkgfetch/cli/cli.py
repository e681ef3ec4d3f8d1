import hashlib
import json
import logging
import os
import shutil
from dataclasses import dataclass
import click
from dotenv import load_dotenv
from pkgfetch.pkg import PartsType, PkgBuildError, new_docker_image_pkg_builder
from pkgfetch.crypto import KeyLoadError, load_private_key_file, sign_hash, generate_keypair
from pkgfetch.fetch import PkgFetchError, default_client_factory, pkg_fetch_sync
from .fetch_config import load_config

# Main CLI to build, sign, and fetch Pkgs.
# It utilizes the 'click' library.

@dataclass
class CliContext:
    verbose:bool

@click.group()
@click.pass_context
@click.option("--verbose", "-v", is_flag=True, help="Will print verbose messages.")
def cli(ctx:click.Context, verbose:bool):
    load_dotenv()
    #print logs to console
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    ctx.obj = CliContext(verbose=verbose)

#===========================================================
# 'fetch' command
#===========================================================
@cli.command(context_settings={'show_default': True})
@click.pass_context
@click.argument("pkg_url")
@click.option("--signature", "-s", required=False, default=None, help="The base64 signature of the Pkg meta file.")
@click.option("--signature-file", required=False, default=None, type=click.Path(exists=True, dir_okay=False), help="File that contains the signature of the Pkg meta file.")
@click.option("--config", "-c", "config_path", required=False, default=None, type=click.Path(exists=True, dir_okay=False), help="Path to the fetch config (TOML).")
@click.option("--dest", "-d", "destination_dir", required=False, default=None, help="Where to store the Pkg. Overrides the config.")
@click.option("--keys", "-k", "keys_dirs", required=False, multiple=True, help="Directory or file with trusted public keys. Overrides the config.")
def fetch(
        ctx:click.Context,
        pkg_url:str,
        signature:str|None,
        signature_file:str|None,
        config_path:str|None,
        destination_dir:str|None,
        keys_dirs:tuple[str, ...]):
    """Fetches and verifies the Pkg at PKG_URL and all of its parts. Prints the path of each part by its image name."""
    if signature is None and signature_file is not None:
        with open(signature_file, 'r') as f:
            signature = f.read().strip()
    if not signature:
        raise click.ClickException("A signature for the Pkg meta file is required, use --signature or --signature-file.")

    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Invalid config: {e}")
    if destination_dir is not None:
        config.destination_dir = destination_dir
    if keys_dirs:
        config.keys_dirs = list(keys_dirs)
    if config.destination_dir is None:
        raise click.ClickException("No destination directory, use --dest or set it in the config.")
    if len(config.keys_dirs) == 0:
        raise click.ClickException("No keys to verify the Pkg, use --keys or set them in the config.")

    def client_factory(timeout_seconds:float|None=None):
        return default_client_factory(timeout_seconds if timeout_seconds is not None else config.timeout_seconds)

    try:
        fetched = pkg_fetch_sync(
            client_factory,
            pkg_url,
            signature,
            config.destination_dir,
            config.keys_dirs,
            per_domain_auth=config.auth,
            part_timeout_seconds=config.part_timeout_seconds,
            part_workers=config.part_workers)
    except PkgFetchError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    click.echo(json.dumps(fetched, indent=2, sort_keys=True))

#===========================================================
# 'build' command
#===========================================================
def _sha256sum_file(file_path:str) -> str:
    hasher = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            hasher.update(chunk)
    return hasher.hexdigest()

@cli.command(context_settings={'show_default': True})
@click.pass_context
@click.option("--author", "-a", required=True, help="Author of the Pkg.")
@click.option("--image", "-i", "images", required=True, multiple=True, help="A part as IMAGE_NAME=FILE, e.g. 'alpine:3.5=alpine.tar.gz'.")
@click.option("--source-base", "-b", "source_bases", required=True, multiple=True, help="Base url the Pkg will be served from; each part gets the source <base>/<pkg id>/<part id>.")
@click.option("--key", "-k", "key_path", required=True, type=click.Path(exists=True, dir_okay=False), help="Private key (PEM) to sign the parts and the Pkg meta file.")
@click.option("--out-dir", "-o", required=True, help="Where to write the Pkg meta file, its signature, and the parts.")
def build(
        ctx:click.Context,
        author:str,
        images:tuple[str, ...],
        source_bases:tuple[str, ...],
        key_path:str,
        out_dir:str):
    """Builds and signs a Pkg from image files, laid out to be served from --source-base."""
    try:
        private_key = load_private_key_file(key_path)
    except KeyLoadError as e:
        raise click.ClickException(str(e))

    parts = []
    for image in images:
        image_name, sep, file_path = image.rpartition("=")
        if not sep or not image_name or not file_path:
            raise click.ClickException(f"Invalid image '{image}', expected IMAGE_NAME=FILE.")
        if not os.path.isfile(file_path):
            raise click.ClickException(f"Image file {file_path} does not exist.")
        sha256sum = _sha256sum_file(file_path)
        parts.append((image_name, file_path, sha256sum, os.path.getsize(file_path)))

    part_ids = [sha256sum for _, _, sha256sum, _ in parts]
    try:
        builder = new_docker_image_pkg_builder(PartsType.FILE, author, part_ids)
        for image_name, file_path, sha256sum, size in parts:
            signature = sign_hash(private_key, bytes.fromhex(sha256sum))
            sources = [f"{base.rstrip('/')}/{builder.id}/{sha256sum}" for base in source_bases]
            builder.add_part(sha256sum, sha256sum, image_name, [signature], size, *sources)
        pkg, pkg_bytes = builder.build()
    except PkgBuildError as e:
        raise click.ClickException(str(e))

    pkg_dir = os.path.join(out_dir, pkg.id)
    os.makedirs(pkg_dir, exist_ok=True)
    for _, file_path, sha256sum, _ in parts:
        shutil.copyfile(file_path, os.path.join(pkg_dir, sha256sum))

    meta_path = os.path.join(out_dir, f"{pkg.id}.json")
    with open(meta_path, 'wb') as f:
        f.write(pkg_bytes)
    with open(f"{meta_path}.sig", 'w') as f:
        f.write(sign_hash(private_key, hashlib.sha256(pkg_bytes).digest()))

    click.echo(f"Built Pkg {pkg.id} with {len(pkg.parts)} part(s): {meta_path}")

#===========================================================
# 'keygen' command
#===========================================================
@cli.command(context_settings={'show_default': True})
@click.pass_context
@click.option("--out-dir", "-o", required=True, help="Where to write the keypair.")
def keygen(ctx:click.Context, out_dir:str):
    """Generates an Ed25519 keypair: private.key to sign, public.pem and public.did to verify (put either in a keys directory)."""
    private_path, public_path, did_path = generate_keypair(out_dir)
    click.echo(f"Private key: {private_path}")
    click.echo(f"Public key: {public_path}")
    with open(did_path, 'r') as f:
        click.echo(f"DID: {f.read()} ({did_path})")

if __name__ == '__main__':
    cli(None)
