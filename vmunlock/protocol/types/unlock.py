"""
VM timelock program contract: instruction builders and the unlock-state
account layout. These are fixed by the on-chain program.
"""
from dataclasses import dataclass
from typing import Optional
import struct
from solders.instruction import AccountMeta, Instruction # type: ignore
from .common import TimelockState, UnlockStatus, UnlockStateError
from ..crypto.addresses import PubkeyLike, b58encode, to_pubkey
from ..config.params import SYSTEM_PROGRAM_ID, SYSVAR_RENT_ID

# Instruction discriminators
INIT_UNLOCK_IX = 7
UNLOCK_IX = 15

ACCOUNT_DISCRIMINATOR_LEN = 8
# vm, owner, address, unlock_at, bump, state, padding[6]
UNLOCK_STATE_LAYOUT = struct.Struct("<32s32s32sqBB6x")
UNLOCK_STATE_SIZE = ACCOUNT_DISCRIMINATOR_LEN + UNLOCK_STATE_LAYOUT.size


def _unlock_accounts(owner: PubkeyLike, payer: PubkeyLike, vm_state: PubkeyLike,
                     unlock_pda: PubkeyLike) -> list:
    return [
        AccountMeta(to_pubkey(owner), is_signer=True, is_writable=True),
        AccountMeta(to_pubkey(payer), is_signer=True, is_writable=True),
        AccountMeta(to_pubkey(vm_state), is_signer=False, is_writable=False),
        AccountMeta(to_pubkey(unlock_pda), is_signer=False, is_writable=True),
    ]


def timelock_unlock_init(owner: PubkeyLike, payer: PubkeyLike, vm_state: PubkeyLike,
                         unlock_pda: PubkeyLike, program_id: PubkeyLike) -> Instruction:
    accounts = _unlock_accounts(owner, payer, vm_state, unlock_pda) + [
        AccountMeta(to_pubkey(SYSTEM_PROGRAM_ID), is_signer=False, is_writable=False),
        AccountMeta(to_pubkey(SYSVAR_RENT_ID), is_signer=False, is_writable=False),
    ]
    return Instruction(to_pubkey(program_id), bytes([INIT_UNLOCK_IX]), accounts)


def timelock_unlock_finalize(owner: PubkeyLike, payer: PubkeyLike, vm_state: PubkeyLike,
                             unlock_pda: PubkeyLike, program_id: PubkeyLike) -> Instruction:
    return Instruction(to_pubkey(program_id), bytes([UNLOCK_IX]),
                       _unlock_accounts(owner, payer, vm_state, unlock_pda))


@dataclass(frozen=True)
class UnlockStateAccount:
    """Decoded on-chain unlock-state record."""
    vm: bytes
    owner: bytes
    address: bytes
    unlock_at: int
    bump: int
    state: TimelockState

    @classmethod
    def unpack(cls, data: bytes) -> 'UnlockStateAccount':
        if len(data) < UNLOCK_STATE_SIZE:
            raise UnlockStateError(
                f"Unlock account data too short: {len(data)} < {UNLOCK_STATE_SIZE} bytes")
        vm, owner, address, unlock_at, bump, state = UNLOCK_STATE_LAYOUT.unpack_from(
            data, ACCOUNT_DISCRIMINATOR_LEN)
        try:
            state = TimelockState(state)
        except ValueError:
            raise UnlockStateError(f"Invalid unlock state byte: {state}")
        return cls(vm=vm, owner=owner, address=address, unlock_at=unlock_at, bump=bump, state=state)

    def pack(self, discriminator: int = 0) -> bytes:
        header = bytes([discriminator]) + bytes(ACCOUNT_DISCRIMINATOR_LEN - 1)
        return header + UNLOCK_STATE_LAYOUT.pack(
            self.vm, self.owner, self.address, self.unlock_at, self.bump, int(self.state))

    def is_unlocked(self) -> bool:
        return self.state == TimelockState.UNLOCKED

    def is_waiting(self) -> bool:
        return self.state == TimelockState.WAITING_FOR_TIMEOUT


@dataclass(frozen=True)
class UnlockAccount:
    """What the orchestrator observes at the unlock address."""
    exists: bool
    unlock_at: Optional[int] = None
    is_finalized: bool = False
    lock_duration: int = 0
    raw: Optional[UnlockStateAccount] = None

    @classmethod
    def missing(cls) -> 'UnlockAccount':
        return cls(exists=False)

    @classmethod
    def from_state(cls, state: UnlockStateAccount, lock_duration: int) -> 'UnlockAccount':
        if state.state == TimelockState.UNKNOWN:
            raise UnlockStateError("Unlock account is in an unknown state")
        return cls(
            exists=True,
            unlock_at=state.unlock_at,
            is_finalized=state.is_unlocked(),
            lock_duration=lock_duration,
            raw=state,
        )

    @property
    def initiated_at(self) -> Optional[int]:
        if self.unlock_at is None:
            return None
        return self.unlock_at - self.lock_duration

    @property
    def status(self) -> UnlockStatus:
        if not self.exists:
            return UnlockStatus.NOT_INITIALIZED
        if self.is_finalized:
            return UnlockStatus.FINALIZED
        return UnlockStatus.INITIALIZED

    def describe(self) -> str:
        if self.raw is None:
            return self.status.value
        return f"{self.status.value} (owner={b58encode(self.raw.owner)}, unlock_at={self.unlock_at})"
