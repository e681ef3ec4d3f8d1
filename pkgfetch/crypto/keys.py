from __future__ import annotations
import base64
import logging
import os
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from .did_key import did_from_private_key, did_to_public_key

logger = logging.getLogger(__name__)

# Loading of the trusted public keys (the "keyset") and the signing primitive that matches verification.
# Signatures are made over the sha256 digest of the content, never over the content itself:
#  - RSA keys use RSA-PSS with MGF1(SHA-256) over the prehashed digest
#  - Ed25519 keys sign the raw 32 byte digest
# Signatures are exchanged as base64 strings.

PublicKey = RSAPublicKey | Ed25519PublicKey
PrivateKey = RSAPrivateKey | Ed25519PrivateKey

PEM_SUFFIXES = ('.pem', '.pub')
DID_SUFFIXES = ('.did',)

class KeyLoadError(Exception):
    pass

class SignatureDecodeError(Exception):
    pass

def load_public_key_file(key_path:str) -> PublicKey:
    try:
        with open(key_path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        raise KeyLoadError(f"Unable to read key file {key_path}: {e}") from e

    try:
        if key_path.endswith(DID_SUFFIXES):
            return did_to_public_key(raw.decode('utf-8'))
        key = serialization.load_pem_public_key(raw)
    except (ValueError, KeyError, UnicodeDecodeError, UnsupportedAlgorithm) as e:
        raise KeyLoadError(f"Unable to parse key file {key_path}: {e}") from e

    if not isinstance(key, (RSAPublicKey, Ed25519PublicKey)):
        raise KeyLoadError(f"Unsupported key type in {key_path}: {type(key).__name__}")
    return key

def load_public_keys(keys_path:str) -> list[PublicKey]:
    """Loads a single key file, or all key files (*.pem, *.pub, *.did) directly inside a directory."""
    if os.path.isdir(keys_path):
        keys = []
        for file_name in sorted(os.listdir(keys_path)):
            file_path = os.path.join(keys_path, file_name)
            if not os.path.isfile(file_path):
                continue
            if not file_name.endswith(PEM_SUFFIXES + DID_SUFFIXES):
                logger.debug(f"Skipping non-key file {file_path}")
                continue
            keys.append(load_public_key_file(file_path))
        return keys
    elif os.path.isfile(keys_path):
        return [load_public_key_file(keys_path)]
    else:
        raise KeyLoadError(f"Keys path {keys_path} does not exist.")

def load_private_key_file(key_path:str) -> PrivateKey:
    try:
        with open(key_path, 'rb') as f:
            key = serialization.load_pem_private_key(f.read(), password=None)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyLoadError(f"Unable to load private key {key_path}: {e}") from e
    if not isinstance(key, (RSAPrivateKey, Ed25519PrivateKey)):
        raise KeyLoadError(f"Unsupported private key type in {key_path}: {type(key).__name__}")
    return key

def sign_hash(private_key:PrivateKey, content_hash:bytes) -> str:
    """Creates a detached, base64 encoded signature over a sha256 digest."""
    if isinstance(private_key, Ed25519PrivateKey):
        signature = private_key.sign(content_hash)
    else:
        signature = private_key.sign(
            content_hash,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
            utils.Prehashed(hashes.SHA256()))
    return base64.b64encode(signature).decode('ascii')

def decode_signature(signature:str) -> bytes:
    try:
        return base64.b64decode(signature.strip(), validate=True)
    except (ValueError, AttributeError) as e:
        raise SignatureDecodeError(f"Signature is not valid base64: {e}") from e

def generate_keypair(out_dir:str) -> tuple[str, str, str]:
    """Writes a new Ed25519 keypair to out_dir: private.key (PEM), public.pem, and public.did. Returns the three paths."""
    os.makedirs(out_dir, mode=0o700, exist_ok=True)
    private_key = Ed25519PrivateKey.generate()
    private_path = os.path.join(out_dir, 'private.key')
    public_path = os.path.join(out_dir, 'public.pem')
    did_path = os.path.join(out_dir, 'public.did')

    with open(private_path, 'wb') as f:
        f.write(private_key.private_bytes(
            serialization.Encoding.PEM, 
            serialization.PrivateFormat.PKCS8, 
            serialization.NoEncryption()))
    os.chmod(private_path, 0o600)
    with open(public_path, 'wb') as f:
        f.write(private_key.public_key().public_bytes(
            serialization.Encoding.PEM, 
            serialization.PublicFormat.SubjectPublicKeyInfo))
    with open(did_path, 'w') as f:
        f.write(did_from_private_key(private_key))
    return private_path, public_path, did_path
