"""
Transaction building blocks shared by venue adapters and the execution engine.

Venue adapters return plain Instruction objects; the engine prefixes the
compute-budget pair, stamps a recent blockhash and hands the Transaction to
the signer. Encoding to the wire format is the signer's job.
"""

import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"

# ComputeBudget instruction discriminators
_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3

MAX_COMPUTE_UNITS = 1_400_000


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: str
    data: bytes = b""
    accounts: Tuple[AccountMeta, ...] = ()


@dataclass(frozen=True)
class ChainReference:
    """Recent blockhash plus the last block height at which it is still valid."""
    blockhash: str
    last_valid_block_height: int


@dataclass
class Transaction:
    fee_payer: str
    instructions: List[Instruction] = field(default_factory=list)
    reference: Optional[ChainReference] = None
    action_id: Optional[str] = None


@dataclass(frozen=True)
class SignedTransaction:
    """Wire-ready transaction as produced by a Signer."""
    payload: bytes              # serialized transaction bytes
    signature: str              # base58 first signature
    reference: ChainReference


def set_compute_unit_limit(units: int) -> Instruction:
    if units <= 0 or units > MAX_COMPUTE_UNITS:
        raise ValueError(f"compute unit limit must be in 1..{MAX_COMPUTE_UNITS}, got {units}")
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        data=struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, units),
    )


def set_compute_unit_price(micro_lamports: int) -> Instruction:
    if micro_lamports < 0:
        raise ValueError("compute unit price must be non-negative")
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        data=struct.pack("<BQ", _SET_COMPUTE_UNIT_PRICE, micro_lamports),
    )


def compute_budget_instructions(units: int, micro_lamports: int) -> List[Instruction]:
    """Limit first, then price; both must precede every venue instruction."""
    return [set_compute_unit_limit(units), set_compute_unit_price(micro_lamports)]
