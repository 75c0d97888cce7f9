from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ListResponse(BaseModel, Generic[T]):
    items: list[T]
    count: int
    limit: int
    offset: int


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Any = None
    request_id: str | None = None
