from . did_key import create_did, did_from_private_key, did_to_public_key, extract_key_type_and_public_key
from . keys import (PublicKey, PrivateKey, KeyLoadError, SignatureDecodeError, load_public_keys, load_public_key_file, 
                    load_private_key_file, sign_hash, generate_keypair)
from . verify import KeySet, VerificationError, verify_signature_with_any_key
