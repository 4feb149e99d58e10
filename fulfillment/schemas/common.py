"""Fulfillment — Common response envelope."""
from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Standard response envelope: {data, error}."""

    data: T | None = None
    error: str | None = None
