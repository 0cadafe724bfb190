# MIT License
# Copyright (c) 2025 Hashborn

"""
Unlock client: chain gateway, timelock waiter and the orchestrating state machine.
"""

from .gateway import ChainGateway, RawAccount, TransactionOutcome
from .waiter import TimelockWaiter
from .machine import UnlockContext, UnlockStateMachine

__all__ = [
    "ChainGateway",
    "RawAccount",
    "TransactionOutcome",
    "TimelockWaiter",
    "UnlockContext",
    "UnlockStateMachine",
]
