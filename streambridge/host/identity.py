"""
Peer Identity

Design Decision: Identity Keys
==============================

Options Considered:
1. Random node IDs (os.urandom) - Simple, but not tied to any key
2. RSA key pairs - What many libp2p deployments used historically
   - Slow to generate, large keys
3. Ed25519 key pairs
   - Fast, 32-byte keys
   - Peer id can be derived from the public key

Decision: Ed25519 with peer id = base32(SHA-256(public key))
- Stable across restarts when the key is persisted
- Lowercase, unpadded base32 keeps addresses copy-pastable

Deterministic identities (seeded from the listen port) exist only to make
debugging repeatable. Never use them in production.
"""

import base64
import hashlib
import logging
import random
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

logger = logging.getLogger(__name__)

KEY_BYTES = 32
PEER_ID_LENGTH = 52  # base32 of a 32-byte digest, unpadded
_PEER_ID_ALPHABET = set('abcdefghijklmnopqrstuvwxyz234567')


def peer_id_from_public_bytes(public_bytes: bytes) -> str:
    """Derive the textual peer id from raw public key bytes."""
    digest = hashlib.sha256(public_bytes).digest()
    return base64.b32encode(digest).decode('ascii').rstrip('=').lower()


def is_valid_peer_id(peer_id: str) -> bool:
    """Check that a string looks like a peer id."""
    return (
        len(peer_id) == PEER_ID_LENGTH
        and set(peer_id) <= _PEER_ID_ALPHABET
    )


class PeerIdentity:
    """An Ed25519 key pair and the peer id derived from it."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.peer_id = peer_id_from_public_bytes(self.public_key_bytes)

    @classmethod
    def generate(cls) -> 'PeerIdentity':
        """Create a new identity from a secure random source."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: int) -> 'PeerIdentity':
        """
        Create a reproducible identity from an integer seed.

        The same seed always yields the same peer id. Unsafe for production:
        anyone who knows the seed can impersonate the peer.
        """
        rng = random.Random(seed)
        key_bytes = bytes(rng.getrandbits(8) for _ in range(KEY_BYTES))
        logger.warning(f"Using deterministic identity (seed={seed}); do not use in production")
        return cls(Ed25519PrivateKey.from_private_bytes(key_bytes))

    @classmethod
    def load_or_create(cls, key_path: Path) -> 'PeerIdentity':
        """Load a PEM key from disk, creating and saving one if missing."""
        key_path = Path(key_path)
        if key_path.exists():
            with open(key_path, 'rb') as f:
                private_key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(private_key, Ed25519PrivateKey):
                raise ValueError(f"{key_path} does not hold an Ed25519 key")
            identity = cls(private_key)
            logger.debug(f"Loaded identity {identity.peer_id[:16]}... from {key_path}")
            return identity

        identity = cls.generate()
        identity.save(key_path)
        logger.info(f"Created new identity {identity.peer_id[:16]}... at {key_path}")
        return identity

    @property
    def public_key_bytes(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    def save(self, key_path: Path):
        """Write the private key to disk as unencrypted PKCS8 PEM."""
        key_path = Path(key_path)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        with open(key_path, 'wb') as f:
            f.write(self.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            ))


def make_identity(deterministic: bool = False, seed: int = 0,
                  key_path: Optional[Path] = None) -> PeerIdentity:
    """
    Build the identity for this process.

    Priority: deterministic seed, then a persisted key file, then a fresh
    random key.
    """
    if deterministic:
        return PeerIdentity.from_seed(seed)
    if key_path is not None:
        return PeerIdentity.load_or_create(key_path)
    return PeerIdentity.generate()
