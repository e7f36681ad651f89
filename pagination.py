import math
from typing import Callable, Optional

from fastapi import Query
from pydantic import BaseModel
from pymongo.collection import Collection

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


class Pagination(BaseModel):
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def pagination_params(default_limit: int = DEFAULT_LIMIT) -> Callable[..., Pagination]:
    """Builds a dependency reading ``page`` and ``limit`` from the query string."""

    def dependency(page: Optional[int] = Query(None), limit: Optional[int] = Query(None)) -> Pagination:
        page = page if page and page >= 1 else DEFAULT_PAGE
        if not limit or limit < 1:
            limit = default_limit
        return Pagination(page=page, limit=min(limit, MAX_LIMIT))

    return dependency


def paginate_results(collection: Collection, query: dict, pagination: Pagination, sort=None) -> dict:
    sort = sort or [("created_at", -1)]
    docs = list(collection.find(query).sort(sort).skip(pagination.skip).limit(pagination.limit))
    total_docs = collection.count_documents(query)
    total_pages = math.ceil(total_docs / pagination.limit) if total_docs else 0
    page = pagination.page
    return {
        "docs": docs,
        "total_docs": total_docs,
        "limit": pagination.limit,
        "page": page,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
        "next_page": page + 1 if page < total_pages else None,
        "prev_page": page - 1 if page > 1 else None,
    }
