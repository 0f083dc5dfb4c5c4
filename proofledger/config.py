"""
Runtime Configuration

Environment Variables:
    PROOFLEDGER_GENESIS_BLOCK: First block number (default 0)
    PROOFLEDGER_AUTO_FINALIZE: Seal a block after every applied extrinsic
        (default true)
    PROOFLEDGER_MAX_PROOF_BYTES: Largest proof the HTTP API accepts,
        0 for no limit (default 0)
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class RuntimeConfig:
    """Block production and API limits."""
    genesis_block: int = 0
    auto_finalize: bool = True
    max_proof_bytes: int = 0

    def __post_init__(self):
        if self.genesis_block < 0:
            raise ValueError(
                f"PROOFLEDGER_GENESIS_BLOCK must be >= 0, got {self.genesis_block}"
            )
        if self.max_proof_bytes < 0:
            raise ValueError(
                f"PROOFLEDGER_MAX_PROOF_BYTES must be >= 0, got {self.max_proof_bytes}"
            )

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            genesis_block=int(os.getenv("PROOFLEDGER_GENESIS_BLOCK", "0")),
            auto_finalize=_env_bool("PROOFLEDGER_AUTO_FINALIZE", True),
            max_proof_bytes=int(os.getenv("PROOFLEDGER_MAX_PROOF_BYTES", "0")),
        )
