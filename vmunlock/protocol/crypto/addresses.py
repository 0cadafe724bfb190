import base58 # type: ignore
from dataclasses import dataclass
from typing import Sequence, Tuple, Union
from solders.pubkey import Pubkey # type: ignore
from .keys import KEY_LENGTH
from ..types.common import InvalidKeyLengthError

MAX_SEED_LENGTH = 32
MAX_SEEDS = 16

# Seeds fixed by the VM program
CODE_VM = b"code_vm"
VM_UNLOCK_ACCOUNT = b"vm_unlock_pda_account"
TIMELOCK_STATE = b"timelock_state"

SeedLike = Union[bytes, Sequence[bytes]]
PubkeyLike = Union[str, bytes, Pubkey]


def b58encode(data: bytes) -> str:
    return base58.b58encode(bytes(data)).decode("ascii")

def b58decode(value: str) -> bytes:
    try:
        return base58.b58decode(value)
    except ValueError as e:
        raise InvalidKeyLengthError(f"Invalid base58 string: {value!r}") from e

def decode_pubkey(value: PubkeyLike) -> bytes:
    """Decodes a base58 address (or passes raw bytes through) and checks it is 32 bytes."""
    if isinstance(value, Pubkey):
        return bytes(value)
    raw = bytes(value) if isinstance(value, (bytes, bytearray)) else b58decode(value)
    if len(raw) != KEY_LENGTH:
        raise InvalidKeyLengthError(f"Public key must be {KEY_LENGTH} bytes, got {len(raw)}")
    return raw

def to_pubkey(value: PubkeyLike) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey(decode_pubkey(value))


@dataclass(frozen=True)
class DerivedAddress:
    """Program-derived address. A pure value: same inputs, same result."""
    address: bytes
    seed_inputs: Tuple[bytes, ...]
    bump: int

    @property
    def pubkey(self) -> Pubkey:
        return Pubkey(self.address)

    @property
    def base58(self) -> str:
        return b58encode(self.address)

    def __str__(self) -> str:
        return self.base58


def _check_seeds(seeds: Sequence[bytes], limit: int):
    if len(seeds) > limit:
        raise InvalidKeyLengthError(f"At most {limit} seeds allowed, got {len(seeds)}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise InvalidKeyLengthError(f"Seed exceeds {MAX_SEED_LENGTH} bytes: {len(seed)}")


def create_program_address(seeds: Sequence[bytes], program_id: PubkeyLike) -> bytes:
    """Recomputes a program address from seeds that already end with a valid bump."""
    seeds = [bytes(s) for s in seeds]
    _check_seeds(seeds, MAX_SEEDS)
    return bytes(Pubkey.create_program_address(seeds, to_pubkey(program_id)))


def find_program_address(seeds: Sequence[bytes], program_id: PubkeyLike) -> DerivedAddress:
    """Searches bumps from 255 down and returns the first off-curve address."""
    seeds = tuple(bytes(s) for s in seeds)
    # One seed slot is reserved for the bump
    _check_seeds(seeds, MAX_SEEDS - 1)
    address, bump = Pubkey.find_program_address(list(seeds), to_pubkey(program_id))
    return DerivedAddress(address=bytes(address), seed_inputs=seeds, bump=bump)


def derive(owner_pubkey: PubkeyLike, program_id: PubkeyLike, seed: SeedLike,
           trailing: Sequence[bytes] = ()) -> DerivedAddress:
    """
    Derives the address owned by `program_id` for `owner_pubkey`.

    Seeds are the fixed seed bytes, then the owner key, then any trailing seeds.
    """
    owner_pubkey = decode_pubkey(owner_pubkey)
    prefix = [seed] if isinstance(seed, (bytes, bytearray)) else list(seed)
    trailing = [decode_pubkey(extra) for extra in trailing]
    return find_program_address([*prefix, owner_pubkey, *trailing], program_id)


def find_virtual_timelock_address(mint: PubkeyLike, vm_authority: PubkeyLike, owner: PubkeyLike,
                                  lock_duration_days: int, program_id: PubkeyLike) -> DerivedAddress:
    if not 0 <= lock_duration_days <= 255:
        raise InvalidKeyLengthError(f"Lock duration must fit in one byte: {lock_duration_days}")
    seeds = [
        TIMELOCK_STATE,
        decode_pubkey(mint),
        decode_pubkey(vm_authority),
        decode_pubkey(owner),
        bytes([lock_duration_days]),
    ]
    return find_program_address(seeds, program_id)


def find_unlock_address(owner: PubkeyLike, timelock: PubkeyLike, vm_state: PubkeyLike,
                        program_id: PubkeyLike) -> DerivedAddress:
    return derive(owner, program_id, [CODE_VM, VM_UNLOCK_ACCOUNT], trailing=[timelock, vm_state])
