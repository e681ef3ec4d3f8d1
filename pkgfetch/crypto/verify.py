from __future__ import annotations
import logging
from typing import Sequence
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from .keys import PublicKey, load_public_keys, decode_signature

logger = logging.getLogger(__name__)

class VerificationError(Exception):
    """No provided signature could be verified with any key of the keyset."""
    pass

class KeySet:
    """The trusted public keys, loaded once and used to verify many signatures.
    
    Verification is computationally expensive (one public key operation per signature and key),
    so callers should load a KeySet once per fetch and not verify more than necessary.
    """
    keys:list[PublicKey]
    sources:list[str]

    def __init__(self, keys:list[PublicKey], sources:list[str]|None=None):
        self.keys = list(keys)
        self.sources = list(sources or [])

    @classmethod
    def load(cls, keys_paths:Sequence[str]) -> KeySet:
        if isinstance(keys_paths, str):
            keys_paths = [keys_paths]
        keys = []
        for keys_path in keys_paths:
            keys.extend(load_public_keys(keys_path))
        if len(keys) == 0:
            logger.warning(f"No public keys found in {list(keys_paths)}, nothing will verify.")
        return cls(keys, list(keys_paths))

    def verify_any(self, content_hash:bytes, signatures:Sequence[str]) -> None:
        """Succeeds on the first signature that validates with any key in the keyset.
        
        Raises VerificationError only if every signature fails with every key. 
        A malformed signature raises a SignatureDecodeError instead.
        """
        for signature in signatures:
            signature_bytes = decode_signature(signature)
            for key in self.keys:
                if _verify(key, signature_bytes, content_hash):
                    return
        raise VerificationError(f"None of {len(signatures)} signature(s) verified with any of {len(self.keys)} key(s) from {self.sources}")


def _verify(key:PublicKey, signature:bytes, content_hash:bytes) -> bool:
    try:
        if isinstance(key, Ed25519PublicKey):
            key.verify(signature, content_hash)
        else:
            key.verify(
                signature,
                content_hash,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.AUTO),
                utils.Prehashed(hashes.SHA256()))
        return True
    except InvalidSignature:
        return False
    except ValueError:
        #e.g. a digest of the wrong length for a prehashed verification
        return False

def verify_signature_with_any_key(content_hash:bytes, signatures:Sequence[str], keys_paths:Sequence[str]) -> None:
    """One-shot verification: loads the keys rooted at keys_paths, then verifies (see KeySet.verify_any)."""
    KeySet.load(keys_paths).verify_any(content_hash, signatures)
