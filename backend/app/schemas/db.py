from typing import Any

from pydantic import BaseModel, Field


class SetRequest(BaseModel):
    path: str = Field(description="Slash-separated node path")
    value: Any = Field(default=None, description="JSON value; null deletes the node")


class UpdateRequest(BaseModel):
    path: str = Field(description="Base path the fields are relative to")
    fields: dict[str, Any] = Field(
        min_length=1, description="Relative path -> value; a null value deletes that child"
    )


class PushRequest(BaseModel):
    path: str = Field(min_length=1, description="Collection path the new child is created under")
    value: Any = Field(description="JSON value of the new child")


class ValueResponse(BaseModel):
    path: str
    value: Any = None


class PushResponse(BaseModel):
    path: str
    key: str
