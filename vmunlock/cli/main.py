# MIT License
# Copyright (c) 2025 Hashborn

import argparse
import logging
import os
import sys
import time
from typing import Optional
from .keystore import KeyStore, SecretInput, console_secret_input
from ..client.gateway import ChainGateway
from ..client.machine import UnlockContext, UnlockStateMachine
from ..client.waiter import TimelockWaiter, format_timestamp
from ..protocol.config.params import NETWORKS, DEFAULT_NETWORK, ENV_RPC_URL, ENV_KEY_DIR, NetworkConfig
from ..protocol.crypto.addresses import b58encode
from ..protocol.types.common import KeyRole, UnlockError

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


def get_rpc_url(args, config: NetworkConfig) -> str:
    return args.rpc_url or os.environ.get(ENV_RPC_URL) or config.rpc_url

def get_key_dir(args) -> str:
    return args.key_dir or os.environ.get(ENV_KEY_DIR) or "."

def build_config(args) -> NetworkConfig:
    base = NETWORKS[args.network]
    return base.copy_with(
        rpc_url=get_rpc_url(args, base),
        poll_interval=args.poll_interval,
        confirm_timeout=args.confirm_timeout,
        max_retries=args.max_retries,
    )

def report_error(err: UnlockError):
    stage = err.stage or "setup"
    print(f"Error [{stage}] {err.kind}: {err}", file=sys.stderr)


def run_unlock(args, secret_input: SecretInput = console_secret_input, session=None) -> int:
    config = build_config(args)
    logger.debug(f"Network {config.network_id}, program {config.program_id}, "
                 f"lock {config.lock_duration_days} days")
    keystore = KeyStore(get_key_dir(args), secret_input=secret_input)

    try:
        try:
            owner = keystore.load_or_create(KeyRole.OWNER)
            payer = keystore.load_or_create(KeyRole.PAYER)
        except UnlockError as e:
            e.stage = e.stage or "load_keys"
            raise

        print(f"Owner: {b58encode(owner.public_key)}")
        print(f"Payer: {b58encode(payer.public_key)}")
        print(f"RPC:   {config.rpc_url}")

        gateway = ChainGateway(config, session=session)
        clock = time.time if args.local_clock else gateway.get_cluster_time
        waiter = TimelockWaiter(clock=clock, poll_interval=config.poll_interval)
        machine = UnlockStateMachine(UnlockContext(config, gateway, owner, payer), waiter=waiter)

        account = machine.run()
    except UnlockError as e:
        report_error(e)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted. Re-run to resume; progress is read back from the ledger.", file=sys.stderr)
        return EXIT_INTERRUPTED

    if account.unlock_at is not None:
        print(f"Unlocked at: {format_timestamp(account.unlock_at)}")
    print("Unlock process completed successfully!")
    return EXIT_OK


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmunlock",
        description="Unlock a time-locked VM token account: initialize, wait out the lock, finalize.")
    parser.add_argument("--network", choices=sorted(NETWORKS), default=DEFAULT_NETWORK, help="Network preset")
    parser.add_argument("--rpc-url", help=f"Ledger RPC URL (env: {ENV_RPC_URL})")
    parser.add_argument("--key-dir", help=f"Directory holding owner_key.json / payer_key.json (env: {ENV_KEY_DIR})")
    parser.add_argument("--poll-interval", type=float, help="Seconds between timelock re-checks")
    parser.add_argument("--confirm-timeout", type=float, help="Seconds to wait for a confirmation")
    parser.add_argument("--max-retries", type=int, help="Attempts per RPC call on transient errors")
    parser.add_argument("--local-clock", action="store_true", help="Use the host clock instead of the ledger clock")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = make_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    # Keep request-level chatter out of debug output
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return run_unlock(args)

if __name__ == "__main__":
    sys.exit(main())
