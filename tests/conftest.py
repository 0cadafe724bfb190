import pytest

from vmunlock.client.gateway import RawAccount, TransactionOutcome
from vmunlock.client.machine import UnlockContext
from vmunlock.client.waiter import TimelockWaiter
from vmunlock.protocol.config.params import NETWORKS
from vmunlock.protocol.crypto.keys import KeyPair
from vmunlock.protocol.types.common import (
    ConfirmationStatus, RpcTransientError, TimelockState, TransactionRejectedError,
)
from vmunlock.protocol.types.unlock import INIT_UNLOCK_IX, UNLOCK_IX, UnlockStateAccount

MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
START_TIME = 1_700_000_000


class SimulatedCrash(Exception):
    """Stands in for the process dying mid-run."""


class StaticSecretInput:
    """Feeds pre-set answers to the key store instead of a terminal."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError("No more secret input available")
        return self.answers.pop(0)


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeLedger:
    """
    In-memory stand-in for the chain gateway. Executes initialize/finalize
    the way the VM program does and records every mutating call.
    """

    def __init__(self, config, clock: FakeClock):
        self.config = config
        self.clock = clock
        self.accounts = {}
        self.submitted = []
        self.fetches = 0
        self.reject_next = None
        self.confirm_status = ConfirmationStatus.CONFIRMED
        self.apply_submissions = True
        self.crash_on_confirm = False
        self.on_submit = None
        self.submit_times = []
        # Number of upcoming reads that fail as if the node were unreachable
        self.transient_failures = 0

    # --- helpers ---

    def put_state(self, address: bytes, owner: bytes, vm: bytes, unlock_at: int, state: TimelockState):
        record = UnlockStateAccount(vm=vm, owner=owner, address=bytes(32), unlock_at=int(unlock_at),
                                    bump=255, state=state)
        self.accounts[bytes(address)] = record.pack(discriminator=4)

    def state_of(self, address: bytes) -> UnlockStateAccount:
        return UnlockStateAccount.unpack(self.accounts[bytes(address)])

    @property
    def actions(self):
        return [action for action, _ in self.submitted]

    # --- gateway interface ---

    def _maybe_fail(self):
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise RpcTransientError("getAccountInfo failed after 5 attempts: connection error")

    def fetch_account(self, address):
        self.fetches += 1
        self._maybe_fail()
        data = self.accounts.get(bytes(address))
        if data is None:
            return None
        return RawAccount(lamports=1_000_000, owner=self.config.program_id, data=data)

    def get_cluster_time(self) -> int:
        self._maybe_fail()
        return int(self.clock())

    def submit(self, pending):
        # Signing must succeed with the signers the orchestrator supplies
        pending.build(bytes(range(32))).verify()

        if self.on_submit is not None:
            hook, self.on_submit = self.on_submit, None
            hook()

        if self.reject_next is not None:
            error, self.reject_next = self.reject_next, None
            raise error

        ix = pending.instructions[0]
        owner, vm, unlock = (bytes(ix.accounts[i].pubkey) for i in (0, 2, 3))
        now = int(self.clock())

        if ix.data[0] == INIT_UNLOCK_IX:
            if unlock in self.accounts:
                raise TransactionRejectedError(
                    '{"InstructionError":[0,{"Custom":0}]}',
                    logs=["Allocate: account Address { address: unlock } already in use"])
            if self.apply_submissions:
                self.put_state(unlock, owner, vm, now + self.config.lock_duration_secs,
                               TimelockState.WAITING_FOR_TIMEOUT)
        elif ix.data[0] == UNLOCK_IX:
            state = self.state_of(unlock)
            if now < state.unlock_at:
                raise TransactionRejectedError("timelock has not expired")
            if self.apply_submissions:
                self.put_state(unlock, owner, vm, state.unlock_at, TimelockState.UNLOCKED)

        signature = f"sig{len(self.submitted) + 1}"
        self.submitted.append((pending.action, signature))
        self.submit_times.append(now)
        pending.mark_submitted(signature)
        return TransactionOutcome(signature=signature, submitted_at=now)

    def await_confirmation(self, signature: str) -> TransactionOutcome:
        if self.crash_on_confirm:
            raise SimulatedCrash(signature)
        return TransactionOutcome(signature=signature, submitted_at=self.clock(), status=self.confirm_status)


@pytest.fixture
def config():
    return NETWORKS["mainnet"].copy_with(rpc_url="http://rpc.test", poll_interval=3600.0)

@pytest.fixture
def owner():
    return KeyPair.from_mnemonic(MNEMONIC)

@pytest.fixture
def payer():
    return KeyPair(bytes(range(1, 33)))

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def ledger(config, clock):
    return FakeLedger(config, clock)

@pytest.fixture
def ctx(config, ledger, owner, payer):
    return UnlockContext(config, ledger, owner, payer)

@pytest.fixture
def waiter(clock, config):
    return TimelockWaiter(clock=clock, sleep=clock.sleep, poll_interval=config.poll_interval)
