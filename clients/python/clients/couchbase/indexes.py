"""
Secondary index provisioning.

Collections are expected to exist (created by the cluster bootstrap); this
module only makes sure the GSI indexes the query paths rely on are present.
Every statement is ``CREATE INDEX IF NOT EXISTS`` so running it on each
startup is safe.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .keyspace import field_expr, get_keyspace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexSpec:
    collection: str
    fields: Tuple[str, ...]

    @property
    def name(self) -> str:
        suffix = "_".join(f.replace(".", "_") for f in self.fields)
        return f"idx_{self.collection}_{suffix}"


INDEXES: List[IndexSpec] = [
    IndexSpec("users", ("email",)),
    IndexSpec("users", ("role",)),
    IndexSpec("users", ("address.city", "address.state")),
    IndexSpec("users", ("verified", "active")),
    IndexSpec("products", ("farmer_id", "status")),
    IndexSpec("products", ("category", "status")),
    IndexSpec("products", ("location.city", "location.state")),
    IndexSpec("products", ("bidding_end_time", "status")),
    IndexSpec("products", ("created_at",)),
    IndexSpec("products", ("current_price",)),
    IndexSpec("products", ("featured", "status")),
    IndexSpec("bids", ("product_id", "buyer_id")),
    IndexSpec("bids", ("product_id", "amount")),
    IndexSpec("bids", ("buyer_id", "status")),
    IndexSpec("bids", ("status", "created_at")),
    IndexSpec("bids", ("valid_until", "status")),
    IndexSpec("bids", ("is_highest", "product_id")),
    IndexSpec("transports", ("transporter_id", "status")),
    IndexSpec("transports", ("farmer_id", "status")),
    IndexSpec("transports", ("buyer_id", "status")),
    IndexSpec("transports", ("product_id",)),
    IndexSpec("transports", ("bid_id",)),
    IndexSpec("transports", ("status", "scheduled_pickup_time")),
]


def create_index_statement(spec: IndexSpec) -> str:
    keyspace = get_keyspace(spec.collection)
    fields = ", ".join(field_expr(f) for f in spec.fields)
    return f"CREATE INDEX IF NOT EXISTS `{spec.name}` ON {keyspace}({fields})"


async def ensure_indexes(specs: Optional[Sequence[IndexSpec]] = None) -> int:
    """Create any missing indexes. Returns how many statements succeeded."""
    created = 0
    for spec in specs or INDEXES:
        statement = create_index_statement(spec)
        try:
            await get_keyspace(spec.collection).query(statement)
            created += 1
        except Exception as e:
            logger.warning(f"Failed to ensure index {spec.name}: {e}")
    logger.info(f"Ensured {created}/{len(specs or INDEXES)} secondary indexes")
    return created
