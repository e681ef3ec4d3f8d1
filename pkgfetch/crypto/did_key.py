from multibase import encode, decode
import multicodec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat, PrivateFormat, NoEncryption

# Simple DIDs, using the did:key method, with an Ed25519 keypair.
# A did:key can be dropped into a keys directory (as a *.did file) instead of a PEM public key.
#code adapted from here: https://grotto-networking.com/blog/posts/DID_Key.html

_ED25519_CODEC = 'ed25519-pub'

def create_did() -> tuple[str, bytes, bytes]:
    "This creates a simple DID, using the did:key method, with an Ed25519 keypair."
    private_key = Ed25519PrivateKey.generate()
    did = did_from_private_key(private_key)
    public_key_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    private_key_bytes = private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return (did, public_key_bytes, private_key_bytes,)

def did_from_private_key(private_key:Ed25519PrivateKey) -> str:
    public_key_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_encoded = encode('base58btc', multicodec.add_prefix(_ED25519_CODEC, public_key_bytes))
    multi_pub = public_encoded.decode('utf8')
    return f"did:key:{multi_pub}"

def extract_key_type_and_public_key(did_key:str) -> tuple[str, bytes]:
    """Function to extract the key type and bytes from a DID key"""
    multi_pub = did_key.strip().split(":")[-1]
    ed255_multi = decode(multi_pub.encode('utf8'))
    codec = multicodec.get_codec(ed255_multi)
    ed255_binary:bytes = multicodec.remove_prefix(ed255_multi)
    return (codec, ed255_binary,)

def did_to_public_key(did_key:str) -> Ed25519PublicKey:
    if not did_key.strip().startswith("did:key:"):
        raise ValueError(f"Not a did:key: {did_key}")
    codec, public_key_bytes = extract_key_type_and_public_key(did_key)
    if codec != _ED25519_CODEC:
        raise ValueError(f"Unsupported did:key codec '{codec}', only {_ED25519_CODEC} keys are supported.")
    return Ed25519PublicKey.from_public_bytes(public_key_bytes)
