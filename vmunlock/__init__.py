"""
vmunlock

Unlocks a time-locked VM token account: derives the unlock address,
initializes the unlock, waits out the lock and finalizes.
"""

__version__ = "0.1.0"
