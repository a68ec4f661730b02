from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRoutingFields(BaseModel):
    """The slice of a chat-completion body the gateway needs for routing.

    Everything else in the payload is forwarded untouched, so unknown fields
    are allowed and never re-serialized.
    """

    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    stream: Optional[bool] = False


class ModelInfo(BaseModel):
    id: str
    object: Literal["model"] = "model"
    owned_by: str


class ModelListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelInfo]

