# MIT License
# Copyright (c) 2025 Hashborn

"""
Unlock State Machine.

Drives one unlock target from an unknown state to finalized:
derive -> fetch -> classify -> act, repeated until the account is finalized.
All progress is read back from the ledger; nothing is trusted from memory
across runs, so re-running after a crash is always safe.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from ..protocol.config.params import NetworkConfig
from ..protocol.crypto.addresses import (
    DerivedAddress, CODE_VM, VM_UNLOCK_ACCOUNT,
    b58encode, create_program_address, decode_pubkey,
    find_unlock_address, find_virtual_timelock_address,
)
from ..protocol.crypto.keys import KeyPair
from ..protocol.types.common import (
    AddressMismatchError, ConfirmationStatus, OutcomeUnknownError,
    TransactionRejectedError, UnlockError, UnlockStateError, UnlockStatus,
)
from ..protocol.types.tx import Instruction, PendingTransaction
from ..protocol.types.unlock import (
    UnlockAccount, UnlockStateAccount, timelock_unlock_finalize, timelock_unlock_init,
)
from .gateway import TransactionOutcome, rejection_from_status
from .waiter import TimelockWaiter, format_timestamp

logger = logging.getLogger(__name__)

INITIALIZE = "initialize"
FINALIZE = "finalize"


@contextmanager
def stage(name: str):
    """Tags any UnlockError escaping the block with the stage it failed in."""
    try:
        yield
    except UnlockError as e:
        if e.stage is None:
            e.stage = name
        raise


class UnlockContext:
    """Everything one run needs: RPC gateway, both key pairs and program accounts."""

    def __init__(self, config: NetworkConfig, gateway, owner: KeyPair, payer: KeyPair):
        if owner == payer:
            logger.warning("Owner and payer are the same key")
        self.config = config
        self.gateway = gateway
        self.owner = owner
        self.payer = payer
        self.program_id = decode_pubkey(config.program_id)
        self.vm_state = decode_pubkey(config.vm_state)
        self.mint = decode_pubkey(config.mint)
        self.vm_authority = decode_pubkey(config.vm_authority)

    @property
    def lock_duration(self) -> int:
        return self.config.lock_duration_secs

    def timelock_address(self) -> DerivedAddress:
        return find_virtual_timelock_address(
            self.mint, self.vm_authority, self.owner.public_key,
            self.config.lock_duration_days, self.program_id)

    def unlock_address(self) -> DerivedAddress:
        timelock = self.timelock_address()
        return find_unlock_address(self.owner.public_key, timelock.address, self.vm_state, self.program_id)

    def verify_unlock_address(self, derived: DerivedAddress):
        """Recomputes the unlock address from raw seeds and the found bump."""
        timelock = self.timelock_address()
        seeds = [
            CODE_VM,
            VM_UNLOCK_ACCOUNT,
            self.owner.public_key,
            timelock.address,
            self.vm_state,
            bytes([derived.bump]),
        ]
        expected = create_program_address(seeds, self.program_id)
        if expected != derived.address:
            raise AddressMismatchError(
                f"Unlock address {derived.base58} does not match expected {b58encode(expected)}")

    def init_instruction(self, unlock: DerivedAddress) -> Instruction:
        return timelock_unlock_init(self.owner.public_key, self.payer.public_key,
                                    self.vm_state, unlock.address, self.program_id)

    def finalize_instruction(self, unlock: DerivedAddress) -> Instruction:
        return timelock_unlock_finalize(self.owner.public_key, self.payer.public_key,
                                        self.vm_state, unlock.address, self.program_id)


@dataclass
class ActionResult:
    """What happened to one submitted action, before re-checking the ledger."""
    action: str
    outcome: Optional[TransactionOutcome] = None
    rejection: Optional[TransactionRejectedError] = None

    def unresolved_error(self) -> UnlockError:
        """Error to raise when a re-fetch still shows the state before the action."""
        status = self.outcome.status if self.outcome else None
        if self.rejection is not None:
            error = self.rejection
        elif status == ConfirmationStatus.FAILED:
            error = rejection_from_status(self.outcome)
        elif status == ConfirmationStatus.TIMED_OUT:
            error = OutcomeUnknownError(
                f"{self.action} transaction {self.outcome.signature} outcome unknown; "
                f"re-run to re-check the ledger")
        else:
            error = UnlockStateError(f"{self.action} confirmed but not reflected on-chain")
        if error.stage is None:
            error.stage = self.action
        return error


class UnlockStateMachine:
    def __init__(self, ctx: UnlockContext, waiter: Optional[TimelockWaiter] = None):
        self.ctx = ctx
        self.waiter = waiter or TimelockWaiter(poll_interval=ctx.config.poll_interval)
        self.status = UnlockStatus.UNKNOWN

    # --- Steps ---

    def derive(self) -> DerivedAddress:
        with stage("derive"):
            unlock = self.ctx.unlock_address()
            self.ctx.verify_unlock_address(unlock)
        logger.info(f"Derived unlock address: {unlock.base58} (bump {unlock.bump})")
        return unlock

    def fetch(self, unlock: DerivedAddress) -> UnlockAccount:
        with stage("fetch"):
            raw = self.ctx.gateway.fetch_account(unlock.address)
            if raw is None:
                account = UnlockAccount.missing()
            else:
                state = UnlockStateAccount.unpack(raw.data)
                self._check_ownership(state)
                account = UnlockAccount.from_state(state, self.ctx.lock_duration)
        self.status = account.status
        logger.debug(f"Unlock account state: {account.describe()}")
        return account

    def _check_ownership(self, state: UnlockStateAccount):
        if state.owner != self.ctx.owner.public_key:
            raise AddressMismatchError(
                f"Unlock account owner {b58encode(state.owner)} is not {b58encode(self.ctx.owner.public_key)}")
        if state.vm != self.ctx.vm_state:
            raise AddressMismatchError(f"Unlock account belongs to VM {b58encode(state.vm)}")

    def _submit(self, action: str, instruction: Instruction) -> ActionResult:
        _log_instruction(instruction)
        pending = PendingTransaction(
            action=action,
            instructions=[instruction],
            signers=[self.ctx.payer, self.ctx.owner],
            fee_payer=self.ctx.payer,
        )
        with stage(action):
            try:
                outcome = self.ctx.gateway.submit(pending)
            except TransactionRejectedError as e:
                # Re-check the ledger before deciding whether this is benign
                if e.looks_already_initialized():
                    logger.info(f"{action}: account already exists; re-checking account state")
                else:
                    logger.warning(f"{action} rejected ({e.reason}); re-checking account state")
                return ActionResult(action=action, rejection=e)
            logger.info(f"{action} transaction sent: {outcome.signature}")
            confirmation = self.ctx.gateway.await_confirmation(outcome.signature)
        if confirmation.status == ConfirmationStatus.CONFIRMED:
            logger.info(f"{action} transaction successful! Signature: {outcome.signature}")
        return ActionResult(action=action, outcome=confirmation)

    def initialize(self, unlock: DerivedAddress) -> ActionResult:
        logger.info("Initializing new unlock...")
        return self._submit(INITIALIZE, self.ctx.init_instruction(unlock))

    def finalize(self, unlock: DerivedAddress) -> ActionResult:
        logger.info("Timelock expired, proceeding with finalization")
        return self._submit(FINALIZE, self.ctx.finalize_instruction(unlock))

    def wait(self, unlock: DerivedAddress, account: UnlockAccount) -> bool:
        with stage("wait"):
            return self.waiter.wait_until_eligible(
                account.initiated_at, account.lock_duration,
                should_stop=lambda: self.fetch(unlock).is_finalized)

    # --- Driver ---

    def run(self) -> UnlockAccount:
        """
        Runs until the unlock account is finalized.

        Each action is attempted at most once per run. If the re-fetched state
        does not move past it, the run fails rather than re-submitting blind.
        """
        unlock = self.derive()
        attempted = {}

        while True:
            account = self.fetch(unlock)

            if account.status == UnlockStatus.FINALIZED:
                logger.info("Account is unlocked")
                return account

            if account.status == UnlockStatus.NOT_INITIALIZED:
                if INITIALIZE in attempted:
                    raise attempted[INITIALIZE].unresolved_error()
                attempted[INITIALIZE] = self.initialize(unlock)
                continue

            # Initialized, waiting for the timelock
            if not self.waiter.is_eligible(account.initiated_at, account.lock_duration):
                logger.info(f"Unlock initialized, eligible at {format_timestamp(account.unlock_at)}")
                self.wait(unlock, account)
                continue

            if FINALIZE in attempted:
                raise attempted[FINALIZE].unresolved_error()
            attempted[FINALIZE] = self.finalize(unlock)


def _log_instruction(ix: Instruction):
    logger.debug(f"Program ID: {b58encode(ix.program_id)}")
    for i, meta in enumerate(ix.accounts):
        logger.debug(f"  {i}: {b58encode(meta.pubkey)} (is_signer: {meta.is_signer}, "
                     f"is_writable: {meta.is_writable})")
