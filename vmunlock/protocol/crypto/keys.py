from ecdsa import SigningKey, Ed25519 # type: ignore
from mnemonic import Mnemonic # type: ignore
from ..types.common import InvalidKeyLengthError, KeyIntegrityError, MnemonicError

KEY_LENGTH = 32
MNEMONIC_WORDS = 12


def _check_length(data: bytes, what: str, expected: int = KEY_LENGTH):
    if len(data) != expected:
        raise InvalidKeyLengthError(f"{what} must be {expected} bytes, got {len(data)}")


def public_key_from_private(priv_bytes: bytes) -> bytes:
    """Returns the 32-byte Ed25519 public key for a 32-byte seed."""
    _check_length(priv_bytes, "private key")
    sk = SigningKey.from_string(priv_bytes, curve=Ed25519)
    # Newer ecdsa releases hand back a bytearray
    return bytes(sk.get_verifying_key().to_string())

def sign(message: bytes, priv_bytes: bytes) -> bytes:
    """Signs a message (pure Ed25519, no pre-hash). Returns a 64-byte signature."""
    _check_length(priv_bytes, "private key")
    sk = SigningKey.from_string(priv_bytes, curve=Ed25519)
    return bytes(sk.sign(message))


class KeyPair:
    """
    Ed25519 key pair owned by a single role.

    The public key is always recomputed from the private key; `expected_pubkey`
    lets a loader assert that stored material is self-consistent.
    """

    def __init__(self, private_key: bytes, expected_pubkey: bytes = None):
        private_key = bytes(private_key)
        _check_length(private_key, "private key")
        self._private_key = private_key
        self.public_key = public_key_from_private(private_key)
        if expected_pubkey is not None and bytes(expected_pubkey) != self.public_key:
            raise KeyIntegrityError("stored public key does not match the private key")

    @classmethod
    def from_mnemonic(cls, phrase: str, passphrase: str = "") -> 'KeyPair':
        """
        Derives a key pair from a 12-word BIP-39 phrase.

        The first 32 bytes of the BIP-39 seed are used directly as the
        Ed25519 seed (no hierarchical derivation path).
        """
        phrase = " ".join(phrase.split())
        words = phrase.split(" ") if phrase else []
        if len(words) != MNEMONIC_WORDS:
            raise MnemonicError(f"Mnemonic must be exactly {MNEMONIC_WORDS} words")
        if any(not (w.isascii() and w.isalpha() and w.islower()) for w in words):
            raise MnemonicError("Mnemonic can only contain lowercase letters and spaces")
        if not Mnemonic("english").check(phrase):
            raise MnemonicError("Mnemonic failed the BIP-39 wordlist/checksum check")

        seed = Mnemonic.to_seed(phrase, passphrase=passphrase)
        return cls(seed[:KEY_LENGTH])

    @property
    def private_key(self) -> bytes:
        return self._private_key

    def sign(self, message: bytes) -> bytes:
        return sign(message, self._private_key)

    def __eq__(self, other) -> bool:
        if not isinstance(other, KeyPair):
            return False
        return self.public_key == other.public_key

    def __hash__(self):
        return hash(self.public_key)

    def __repr__(self):
        # Never render the secret half
        from .addresses import b58encode
        return f"KeyPair(pubkey={b58encode(self.public_key)})"
