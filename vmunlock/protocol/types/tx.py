"""
Ledger transaction assembly.

Messages are compiled and serialized by solders (legacy format). The
signatures come from the role key pairs, in the order the message header
requires.
"""
from dataclasses import dataclass
from typing import Iterable, List
import base64
import time
from solders.hash import Hash # type: ignore
from solders.instruction import Instruction # type: ignore
from solders.message import Message # type: ignore
from solders.signature import Signature # type: ignore
from solders.transaction import Transaction # type: ignore
from ..crypto.keys import KeyPair, KEY_LENGTH
from ..crypto.addresses import b58encode, to_pubkey
from .common import InvalidKeyLengthError


def compile_message(instructions: Iterable[Instruction], fee_payer: bytes,
                    recent_blockhash: bytes) -> Message:
    """The fee payer is always the first account key."""
    recent_blockhash = bytes(recent_blockhash)
    if len(recent_blockhash) != KEY_LENGTH:
        raise InvalidKeyLengthError(f"Blockhash must be {KEY_LENGTH} bytes, got {len(recent_blockhash)}")
    return Message.new_with_blockhash(list(instructions), to_pubkey(fee_payer), Hash(recent_blockhash))


def required_signers(message: Message) -> List[bytes]:
    return [bytes(k) for k in message.account_keys[:message.header.num_required_signatures]]


def sign_message(message: Message, signers: Iterable[KeyPair]) -> Transaction:
    """Signs the message with exactly the keys the header requires, in header order."""
    by_key = {kp.public_key: kp for kp in signers}
    required = required_signers(message)
    missing = [b58encode(k) for k in required if k not in by_key]
    if missing:
        raise ValueError(f"Missing signers: {', '.join(missing)}")
    payload = bytes(message)
    return Transaction.populate(message, [Signature(by_key[k].sign(payload)) for k in required])


def transaction_id(tx: Transaction) -> str:
    """First signature in base58; the ledger uses it as the transaction id."""
    return str(tx.signatures[0])


def to_wire_base64(tx: Transaction) -> str:
    return base64.b64encode(bytes(tx)).decode("ascii")


@dataclass
class PendingTransaction:
    """
    One action in flight. Lives only for the current run; a restart
    re-derives progress from the ledger instead.
    """
    action: str
    instructions: List[Instruction]
    signers: List[KeyPair]
    fee_payer: KeyPair
    submitted_at: float = 0.0
    signature: str = ""

    def mark_submitted(self, signature: str):
        self.signature = signature
        self.submitted_at = time.time()

    def build(self, recent_blockhash: bytes) -> Transaction:
        message = compile_message(self.instructions, self.fee_payer.public_key, recent_blockhash)
        return sign_message(message, self.signers)
