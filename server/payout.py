"""Settlement arithmetic for completed challenges.

Everything is integer basis points of the pooled treasury. The performer
absorbs whatever the igniter cap and integer division leave over, so the
three shares always sum to the treasury exactly.
"""

from dataclasses import dataclass

from protocol import (
    BPS, DEFI_SHARE_BPS, IGNITER_CAP_UNITS, IGNITER_SHARE_BPS,
    QUORUM_BPS, ZHARRIOR_SHARE_BPS,
)


@dataclass(frozen=True)
class CompletionSplit:
    treasury: int
    zharrior: int
    igniter: int
    defi: int

    def to_dict(self) -> dict:
        return {
            "treasury": str(self.treasury),
            "zharrior_share": str(self.zharrior),
            "igniter_share": str(self.igniter),
            "defi_share": str(self.defi),
        }


def igniter_cap(decimals: int) -> int:
    """Absolute cap on the igniter's share, in base units."""
    return IGNITER_CAP_UNITS * 10 ** decimals


def completion_split(treasury: int, decimals: int) -> CompletionSplit:
    """Split a completed challenge's treasury between performer, igniter and defi sink."""
    if treasury < 0:
        raise ValueError(f"treasury cannot be negative: {treasury}")
    zharrior = treasury * ZHARRIOR_SHARE_BPS // BPS
    defi = treasury * DEFI_SHARE_BPS // BPS
    igniter = min(treasury * IGNITER_SHARE_BPS // BPS, igniter_cap(decimals))
    remaining = treasury - igniter - defi
    zharrior = max(zharrior, remaining)
    return CompletionSplit(treasury=treasury, zharrior=zharrior, igniter=igniter, defi=defi)


def quorum_reached(total_disputed: int, treasury: int) -> bool:
    """Disputing stake >= 50% of the pooled treasury."""
    if treasury <= 0:
        return False
    return total_disputed * BPS >= treasury * QUORUM_BPS


def dispute_bps(total_disputed: int, treasury: int) -> int:
    """Disputed share of the treasury in basis points (0 when nothing is pooled)."""
    if treasury <= 0:
        return 0
    return total_disputed * BPS // treasury
