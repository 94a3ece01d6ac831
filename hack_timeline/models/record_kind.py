"""
Record kind registry - maps a kind name to its table, join table and fields
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from sqlalchemy import Table

from hack_timeline.models.db import (
    HackingInfo, TransferInfo, hacking_info_tags, transfer_info_tags,
)

HACKING = "hacking"
TRANSFER = "transfer"


@dataclass(frozen=True)
class RecordKind:
    name: str
    model: type
    join_table: Table
    fields: Tuple[str, ...]


RECORD_KINDS: Dict[str, RecordKind] = {
    HACKING: RecordKind(
        name=HACKING,
        model=HackingInfo,
        join_table=hacking_info_tags,
        fields=("protocol", "network", "amount", "tx_hash"),
    ),
    TRANSFER: RecordKind(
        name=TRANSFER,
        model=TransferInfo,
        join_table=transfer_info_tags,
        fields=("token", "amount", "from_address", "to_address"),
    ),
}


def get_record_kind(name: str) -> RecordKind:
    try:
        return RECORD_KINDS[str(name or "").strip().lower()]
    except KeyError:
        raise ValueError(f"unknown record kind: {name}") from None
