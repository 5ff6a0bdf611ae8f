from typing import Any, Callable, Dict, List

from fastapi import HTTPException, status
from pydantic import BaseModel

from models.errors import (
    EntityValidationError,
    MarketplaceError,
    NotFoundError,
    UnauthorizedError,
)
from models.operations.common import Page


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


def pagination_from(page: Page) -> Pagination:
    return Pagination(total=page.total, page=page.page, limit=page.limit, pages=page.pages)


def page_items(page: Page, converter: Callable[[Any], Any]) -> List[Any]:
    return [converter(item) for item in page.items]


def to_http_exception(e: MarketplaceError) -> HTTPException:
    """Map a business-rule failure onto an HTTP error; invalid state is a 400."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)
    if isinstance(e, EntityValidationError):
        detail: Dict[str, Any] = {"message": e.message, "errors": e.errors}
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
