import os
import json
import getpass
import logging
import tempfile
from typing import Callable, List
from pydantic import BaseModel, ValidationError, field_validator
from ..protocol.config.params import OWNER_KEY_FILE, PAYER_KEY_FILE
from ..protocol.crypto.keys import KeyPair, KEY_LENGTH
from ..protocol.crypto.addresses import b58encode, b58decode
from ..protocol.types.common import (
    InvalidKeyLengthError, KeyIntegrityError, KeyRole, MissingPayerError, MnemonicError,
)

logger = logging.getLogger(__name__)

KEY_FILES = {
    KeyRole.OWNER: OWNER_KEY_FILE,
    KeyRole.PAYER: PAYER_KEY_FILE,
}

# Asks for a secret and returns what the user typed
SecretInput = Callable[[str], str]


def console_secret_input(prompt: str) -> str:
    """Blocking terminal read without echo."""
    return getpass.getpass(prompt)


class KeyFileFormat(BaseModel):
    private_key: List[int]
    pubkey: str

    @field_validator("private_key")
    @classmethod
    def check_bytes(cls, value: List[int]) -> List[int]:
        if any(not 0 <= b <= 255 for b in value):
            raise ValueError("private_key entries must be in 0..255")
        return value

    @classmethod
    def from_keypair(cls, kp: KeyPair) -> 'KeyFileFormat':
        return cls(private_key=list(kp.private_key), pubkey=b58encode(kp.public_key))

    def to_keypair(self) -> KeyPair:
        if len(self.private_key) != KEY_LENGTH:
            raise InvalidKeyLengthError(
                f"private_key must have {KEY_LENGTH} entries, got {len(self.private_key)}")
        try:
            stored_pub = b58decode(self.pubkey)
        except InvalidKeyLengthError:
            raise KeyIntegrityError("pubkey is not valid base58")
        if len(stored_pub) != KEY_LENGTH:
            raise KeyIntegrityError(f"pubkey decodes to {len(stored_pub)} bytes, expected {KEY_LENGTH}")
        return KeyPair(bytes(self.private_key), expected_pubkey=stored_pub)


class KeyStore:
    def __init__(self, root_dir: str = ".", secret_input: SecretInput = console_secret_input):
        self.root_dir = root_dir
        self.secret_input = secret_input

    def path_for(self, role: KeyRole) -> str:
        return os.path.join(self.root_dir, KEY_FILES[role])

    def exists(self, role: KeyRole) -> bool:
        return os.path.exists(self.path_for(role))

    def load(self, role: KeyRole) -> KeyPair:
        """Loads and verifies a key file. The stored pubkey must match the private key."""
        path = self.path_for(role)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise KeyIntegrityError(f"{path} is not valid JSON: {e}")
        except UnicodeDecodeError:
            raise KeyIntegrityError(f"{path} is not a text key file")
        except OSError as e:
            raise KeyIntegrityError(f"{path} could not be read: {e.strerror or e}")

        try:
            stored = KeyFileFormat.model_validate(raw)
        except ValidationError as e:
            raise KeyIntegrityError(f"{path} has an invalid layout: {e.errors()[0]['msg']}")

        try:
            kp = stored.to_keypair()
        except (KeyIntegrityError, InvalidKeyLengthError) as e:
            e.args = (f"{path}: {e}",)
            raise
        logger.debug(f"Loaded {role.value} key {b58encode(kp.public_key)} from {path}")
        return kp

    def load_or_create(self, role: KeyRole) -> KeyPair:
        if self.exists(role):
            return self.load(role)

        if role == KeyRole.PAYER:
            raise MissingPayerError(
                f"Payer key file {self.path_for(role)} not found; create and fund it before running")

        try:
            phrase = self.secret_input("Enter your 12-word mnemonic phrase: ")
        except EOFError:
            raise MnemonicError("No mnemonic provided")
        kp = KeyPair.from_mnemonic(phrase.strip())
        self.save(role, kp)
        logger.info(f"Keypair saved to {self.path_for(role)}")
        return kp

    def save(self, role: KeyRole, kp: KeyPair, overwrite: bool = False):
        path = self.path_for(role)
        if os.path.exists(path) and not overwrite:
            raise ValueError(f"Key file {path} already exists")
        data = KeyFileFormat.from_keypair(kp).model_dump()
        self._save_key_file(path, data)

    def _save_key_file(self, path: str, data: dict):
        """Writes to a temp file in the same directory, then renames over the target."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".key-", suffix=".tmp", dir=directory)
        try:
            # Secure permissions before any secret byte is written
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=4)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
