# MIT License
# Copyright (c) 2025 Hashborn

from typing import Dict

SECONDS_PER_DAY = 86_400

# Well-known runtime accounts
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
SYSVAR_RENT_ID = "SysvarRent111111111111111111111111111111111"
SYSVAR_CLOCK_ID = "SysvarC1ock11111111111111111111111111111111"

OWNER_KEY_FILE = "owner_key.json"
PAYER_KEY_FILE = "payer_key.json"

ENV_RPC_URL = "VMUNLOCK_RPC_URL"
ENV_KEY_DIR = "VMUNLOCK_KEY_DIR"


class NetworkConfig:
    def __init__(self,
                 network_id: str,
                 rpc_url: str,
                 program_id: str,
                 vm_state: str,
                 mint: str,
                 vm_authority: str,
                 lock_duration_days: int = 21,
                 commitment: str = "confirmed",
                 # Chain gateway retry params
                 max_retries: int = 5,          # total attempts per RPC call
                 backoff_base: float = 0.5,
                 backoff_max: float = 8.0,
                 request_timeout: float = 30.0,
                 # Confirmation polling
                 confirm_interval: float = 2.0,
                 confirm_timeout: float = 90.0,
                 # Timelock waiter cadence
                 poll_interval: float = 60.0):
        self.network_id = network_id
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.vm_state = vm_state
        self.mint = mint
        self.vm_authority = vm_authority
        self.lock_duration_days = lock_duration_days
        self.commitment = commitment
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.request_timeout = request_timeout
        self.confirm_interval = confirm_interval
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    @property
    def lock_duration_secs(self) -> int:
        return self.lock_duration_days * SECONDS_PER_DAY

    def copy_with(self, **overrides) -> 'NetworkConfig':
        """Returns a copy with the given fields replaced. None values are ignored."""
        params = dict(vars(self))
        for key, value in overrides.items():
            if key not in params:
                raise KeyError(f"Unknown config field: {key}")
            if value is not None:
                params[key] = value
        return NetworkConfig(**params)


NETWORKS: Dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig(
        network_id="mainnet",
        rpc_url="https://api.mainnet-beta.solana.com",
        program_id="vmZ1WUq8SxjBWcaeTCvgJRZbS84R61uniFsQy5YMRTJ",
        vm_state="FDrssd3RVeCkgHAT2NkEpkxC5UgfJpKHeebXUMnuzD6D",
        mint="kinXdEcpDQeHPEuQnqmUgtYykqKGVFq6CeVX5iAHJq6",
        vm_authority="f1ipC31qd2u88MjNYp1T4Cc7rnWfM9ivYpTV1Z8FHnD",
        lock_duration_days=21,
    ),
}

DEFAULT_NETWORK = "mainnet"
