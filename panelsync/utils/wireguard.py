import base64

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519


def generate_keypair() -> tuple[str, str]:
    """
    Generate a WireGuard key pair.
    Returns `(private_key, public_key)` in the padded standard Base64 form wg(8) prints.
    """
    private_bytes = x25519.X25519PrivateKey.generate().private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    private_key = base64.b64encode(private_bytes).decode("utf-8")
    return private_key, public_key_of(private_key)


def public_key_of(private_key: str) -> str:
    decoded = base64.b64decode(private_key.strip())
    if len(decoded) != 32:
        raise ValueError("WireGuard private key must decode to 32 bytes")
    public_bytes = x25519.X25519PrivateKey.from_private_bytes(decoded).public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(public_bytes).decode("utf-8")
