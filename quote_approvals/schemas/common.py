from typing import Generic, List, Optional, Sequence, Type, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T] = Field(default_factory=list)  # type: ignore[assignment]
    pagination: PaginationMeta


def paginate(
    items: Sequence,
    page: int,
    limit: int,
    schema: Optional[Type[BaseModel]] = None,
) -> PaginatedResponse:
    """Page an already-filtered, already-ordered list; ``schema`` converts each item on the page."""
    total = len(items)
    pages = max(1, -(-total // limit))
    start = (page - 1) * limit
    window = list(items[start:start + limit])
    if schema is not None:
        window = [schema.model_validate(item) for item in window]
    return PaginatedResponse(
        data=window,
        pagination=PaginationMeta(
            page=page,
            limit=limit,
            total=total,
            total_pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        ),
    )
