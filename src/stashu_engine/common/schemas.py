"""Shared Pydantic schemas for Stashu-Engine."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Serialized as camelCase for the browser client; accepts either case on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class HealthResponse(BaseModel):
    status: str = "ok"
    name: str = "Stashu API"
    version: str = "0.1.0"


class APIResponse(BaseModel, Generic[T]):
    """Success envelope: ``{"success": true, "data": ...}``."""

    success: bool = True
    data: T


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str = ""
