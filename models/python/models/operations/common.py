"""
Helpers shared by the marketplace operations.

- ``cas_retry`` performs a CAS-guarded read-modify-write of one document
- ``build_entity_data`` turns pydantic failures into ``EntityValidationError``
- ``Page`` / ``page_window`` implement page/limit pagination
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from couchbase.exceptions import CASMismatchException
from pydantic import BaseModel, ValidationError

from clients.couchbase import BaseModelCouchbase
from models.errors import EntityValidationError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModelCouchbase)
D = TypeVar("D", bound=BaseModel)


class OperationSettings(BaseModel):
    cas_max_retries: int = 5
    cas_initial_backoff_ms: int = 10
    default_page_limit: int = 10
    max_page_limit: int = 100


settings = OperationSettings()


def configure(**values: Any) -> OperationSettings:
    """Override operation settings (called once at startup from the service config)."""
    global settings
    settings = settings.model_copy(update=values)
    return settings


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def cas_retry(
    model_cls: Type[E],
    doc_id: str,
    mutator: Callable[[Any], None],
    not_found_message: Optional[str] = None,
    max_retries: Optional[int] = None,
) -> E:
    """Read-modify-write a document with CAS-guarded retry.

    *mutator* receives the entity data and mutates it in place. It runs
    against a fresh read on every attempt, so any precondition it checks is
    re-validated; raising a ``MarketplaceError`` aborts without writing.
    On ``CASMismatchException`` the helper re-reads and retries with
    exponential backoff (10 ms, 20 ms, 40 ms, ...).
    """
    if max_retries is None:
        max_retries = settings.cas_max_retries
    backoff_ms = settings.cas_initial_backoff_ms
    for attempt in range(max_retries + 1):
        entity = await model_cls.get(doc_id)
        if not entity:
            raise NotFoundError(not_found_message or f"{model_cls.__name__} {doc_id} not found")

        mutator(entity.data)

        try:
            return await model_cls.update(entity)
        except CASMismatchException:
            if attempt == max_retries:
                break
            logger.debug(f"CAS mismatch on {model_cls.__name__} {doc_id}, retry {attempt + 1}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    logger.warning(f"Giving up on {model_cls.__name__} {doc_id} after {max_retries + 1} attempts")
    raise InvalidStateError("Concurrent update conflict, please retry")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def build_entity_data(data_cls: Type[D], values: Dict[str, Any]) -> D:
    try:
        return data_cls.model_validate(values)
    except ValidationError as e:
        raise EntityValidationError.from_pydantic(e) from e


def entity_payload(entity: BaseModelCouchbase) -> Dict[str, Any]:
    """JSON-ready ``{"id": ..., **data}`` used in relay payloads and responses."""
    return {"id": entity.id, **entity.data.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

@dataclass
class Page(Generic[E]):
    items: List[E]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def page_window(page: Optional[int], limit: Optional[int]) -> Tuple[int, int, int]:
    """Clamp page/limit and return ``(page, limit, offset)``."""
    page = max(1, page or 1)
    limit = limit or settings.default_page_limit
    limit = max(1, min(limit, settings.max_page_limit))
    return page, limit, (page - 1) * limit


async def paginate(
    model_cls: Type[E],
    conditions: Sequence,
    order_by: Sequence[str],
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[E]:
    page, limit, offset = page_window(page, limit)
    items = await model_cls.find(conditions, order_by, limit=limit, offset=offset)
    total = await model_cls.count(conditions)
    return Page(items=items, total=total, page=page, limit=limit)
