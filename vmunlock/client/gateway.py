"""
Chain Gateway.

JSON-RPC access to a single ledger node: account fetch, transaction submit
and confirmation polling. Transient failures (connection errors, rate
limits, 5xx) are retried with exponential backoff; deterministic rejections
surface immediately as TransactionRejectedError.
"""
import base64
import json
import logging
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import BaseModel

from ..protocol.config.params import NetworkConfig, SYSVAR_CLOCK_ID
from ..protocol.crypto.addresses import b58encode, decode_pubkey
from ..protocol.types.common import (
    ConfirmationStatus, RpcError, RpcTransientError, TransactionRejectedError,
)
from ..protocol.types.tx import PendingTransaction, to_wire_base64, transaction_id

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUS = {429, 500, 502, 503, 504}
# Node is behind / unhealthy / slot skipped: worth another try
TRANSIENT_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}
# Preflight simulation failure / signature verification failure
REJECTION_RPC_CODES = {-32002, -32003}

# Clock sysvar: slot u64, epoch_start_timestamp i64, epoch u64,
# leader_schedule_epoch u64, unix_timestamp i64
CLOCK_UNIX_TIMESTAMP = struct.Struct("<q")
CLOCK_UNIX_TIMESTAMP_OFFSET = 32


class RawAccount(BaseModel):
    lamports: int
    owner: str
    data: bytes
    executable: bool = False
    rent_epoch: int = 0


@dataclass
class TransactionOutcome:
    signature: str
    submitted_at: float
    status: Optional[ConfirmationStatus] = None
    error: Optional[Any] = None
    attempts: int = 1


class ChainGateway:
    def __init__(self, config: NetworkConfig, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config = config
        self.rpc_url = config.rpc_url
        self.session = session or requests.Session()
        self.sleep = sleep
        self.monotonic = monotonic
        self._request_id = 0

    # --- Transport ---

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_max, self.config.backoff_base * (2 ** attempt))

    def _post(self, method: str, params: list) -> Dict[str, Any]:
        """Single HTTP round-trip. Raises RpcTransientError for retryable failures."""
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            resp = self.session.post(self.rpc_url, json=body, timeout=self.config.request_timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RpcTransientError(f"{method}: connection error: {e}")
        except requests.RequestException as e:
            # Bad URL scheme, redirect loop and the like
            raise RpcError(f"{method}: request failed: {e}")

        if resp.status_code in TRANSIENT_HTTP_STATUS:
            raise RpcTransientError(f"{method}: HTTP {resp.status_code}", code=resp.status_code)
        if resp.status_code != 200:
            raise RpcError(f"{method}: HTTP {resp.status_code}: {resp.text[:200]}", code=resp.status_code)

        try:
            payload = resp.json()
        except ValueError:
            raise RpcTransientError(f"{method}: malformed JSON response")
        if not isinstance(payload, dict):
            raise RpcError(f"{method}: unexpected response body: {type(payload).__name__}")

        error = payload.get("error")
        if error and not isinstance(error, dict):
            error = {"message": str(error)}
        if error:
            code = error.get("code")
            message = str(error.get("message", "unknown error"))
            if code in TRANSIENT_RPC_CODES or "rate limit" in message.lower():
                raise RpcTransientError(f"{method}: {message}", code=code)
            if code in REJECTION_RPC_CODES:
                data = error.get("data") or {}
                reason = data.get("err") or message
                raise TransactionRejectedError(_format_reason(reason), logs=data.get("logs"))
            raise RpcError(f"{method}: {message}", code=code)

        if "result" not in payload:
            raise RpcError(f"{method}: response has no result")
        return payload["result"]

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """RPC call with bounded retry. `max_retries` is the total number of attempts."""
        attempts = 0
        while True:
            attempts += 1
            try:
                return self._post(method, params or [])
            except RpcTransientError as e:
                if attempts >= self.config.max_retries:
                    logger.error(f"{method} failed after {attempts} attempts: {e}")
                    raise RpcTransientError(
                        f"{method} failed after {attempts} attempts: {e}", code=e.code)
                delay = self._backoff(attempts - 1)
                logger.warning(f"{method} attempt {attempts} failed ({e}); retrying in {delay:.1f}s")
                self.sleep(delay)

    # --- Reads ---

    def fetch_account(self, address) -> Optional[RawAccount]:
        """Returns None when the account has never been created."""
        result = self.call("getAccountInfo", [
            b58encode(decode_pubkey(address)),
            {"encoding": "base64", "commitment": self.config.commitment},
        ])
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data_field = value.get("data") or ["", "base64"]
        return RawAccount(
            lamports=value.get("lamports", 0),
            owner=value.get("owner", ""),
            data=base64.b64decode(data_field[0]),
            executable=value.get("executable", False),
            rent_epoch=value.get("rentEpoch") or 0,
        )

    def get_latest_blockhash(self) -> bytes:
        result = self.call("getLatestBlockhash", [{"commitment": self.config.commitment}])
        try:
            return decode_pubkey(result["value"]["blockhash"])
        except (KeyError, TypeError):
            raise RpcError("getLatestBlockhash: response has no blockhash")

    def get_cluster_time(self) -> int:
        """Unix timestamp according to the ledger's Clock sysvar."""
        account = self.fetch_account(SYSVAR_CLOCK_ID)
        if account is None or len(account.data) < CLOCK_UNIX_TIMESTAMP_OFFSET + 8:
            raise RpcError("Clock sysvar unavailable")
        (unix_timestamp,) = CLOCK_UNIX_TIMESTAMP.unpack_from(account.data, CLOCK_UNIX_TIMESTAMP_OFFSET)
        return unix_timestamp

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        statuses = (result.get("value") if isinstance(result, dict) else None) or [None]
        return statuses[0]

    # --- Writes ---

    def submit(self, tx: PendingTransaction) -> TransactionOutcome:
        """
        Signs with the current blockhash and sends. The same signed bytes are
        re-sent on transient failures, so a retry can never land twice.
        """
        blockhash = self.get_latest_blockhash()
        signed = tx.build(blockhash)
        signature = transaction_id(signed)
        wire = to_wire_base64(signed)

        logger.debug(f"Submitting {tx.action} transaction {signature}")
        try:
            returned = self.call("sendTransaction", [wire, {
                "encoding": "base64",
                "preflightCommitment": self.config.commitment,
            }])
        except TransactionRejectedError as e:
            e.signature = signature
            logger.error(f"{tx.action} rejected: {e.reason}")
            raise

        if returned and returned != signature:
            logger.warning(f"Node returned unexpected signature {returned} (expected {signature})")
        tx.mark_submitted(signature)
        return TransactionOutcome(signature=signature, submitted_at=tx.submitted_at)

    def await_confirmation(self, signature: str) -> TransactionOutcome:
        """
        Polls until the signature reaches the configured commitment, fails,
        or the wall-clock timeout expires (TIMED_OUT means outcome unknown).
        """
        started = self.monotonic()
        deadline = started + self.config.confirm_timeout
        polls = 0
        while True:
            polls += 1
            status = self.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    logger.warning(f"Transaction {signature} failed: {status['err']}")
                    return TransactionOutcome(signature=signature, submitted_at=started,
                                              status=ConfirmationStatus.FAILED,
                                              error=status["err"], attempts=polls)
                if _meets_commitment(status.get("confirmationStatus"), self.config.commitment):
                    logger.info(f"✅ Transaction {signature} {status.get('confirmationStatus')}")
                    return TransactionOutcome(signature=signature, submitted_at=started,
                                              status=ConfirmationStatus.CONFIRMED, attempts=polls)

            if self.monotonic() >= deadline:
                logger.warning(f"Timed out waiting for {signature} after {polls} polls")
                return TransactionOutcome(signature=signature, submitted_at=started,
                                          status=ConfirmationStatus.TIMED_OUT, attempts=polls)
            self.sleep(self.config.confirm_interval)


_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _meets_commitment(observed: Optional[str], wanted: str) -> bool:
    if observed is None:
        return False
    return _COMMITMENT_RANK.get(observed, -1) >= _COMMITMENT_RANK.get(wanted, 1)


def _format_reason(reason: Any) -> str:
    if isinstance(reason, str):
        return reason
    return json.dumps(reason, separators=(",", ":"))


def rejection_from_status(outcome: TransactionOutcome) -> TransactionRejectedError:
    """Wraps an on-chain execution failure so callers treat it like a preflight rejection."""
    return TransactionRejectedError(_format_reason(outcome.error), signature=outcome.signature)
