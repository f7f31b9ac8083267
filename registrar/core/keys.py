from bittensor.utils import is_valid_ss58_address
from bittensor_wallet import Keypair

from .errors import InvalidKeyMaterial

def load_keypair(material: str) -> Keypair:
    """Build a signing keypair from a mnemonic, a derivation URI or a 0x hex seed."""
    if not material or not material.strip():
        raise InvalidKeyMaterial("Key material is empty")

    material = material.strip()
    try:
        if material.startswith("0x"):
            return Keypair.create_from_seed(material)
        return Keypair.create_from_uri(material)
    except Exception as e:
        # The message of the underlying error may echo the secret.
        raise InvalidKeyMaterial(f"Could not derive a keypair ({type(e).__name__})") from None

def resolve_hotkey(identity: str) -> str:
    if identity and is_valid_ss58_address(identity.strip()):
        return identity.strip()
    return load_keypair(identity).ss58_address

def public_to_ss58(public_key) -> str:
    if isinstance(public_key, (bytes, bytearray)):
        public_key = "0x" + bytes(public_key).hex()
    return Keypair(public_key=public_key, ss58_format=42).ss58_address
