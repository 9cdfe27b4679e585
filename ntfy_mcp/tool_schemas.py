from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, model_validator


class ToolErrorInfo(BaseModel):
    code: str
    message: str


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: ToolErrorInfo | None = None

    required_on_success: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _validate_required_on_success(self) -> ToolOutputBase:
        if self.error is not None:
            return self
        for field in self.required_on_success:
            if getattr(self, field) is None:
                raise ValueError(f"Missing required field: {field}")
        return self


class MessageInfo(BaseModel):
    id: str | None = None
    time: int | None = None
    title: str | None = None
    message: str | None = None
    priority: int | None = None
    tags: list[str] | None = None
    topic: str | None = None


class PingOutput(ToolOutputBase):
    ok: bool | None = None
    topic: str | None = None
    subscribed: bool | None = None
    version: int | None = None

    required_on_success = ("ok",)


class SendOutput(ToolOutputBase):
    topic: str | None = None
    id: str | None = None
    time: int | None = None
    status: str | None = None
    priority: int | None = None

    required_on_success = ("topic", "status")


class SetTopicOutput(ToolOutputBase):
    topic: str | None = None
    base_url: str | None = None

    required_on_success = ("topic", "base_url")


class WaitAndReadOutput(ToolOutputBase):
    attempts: int | None = None
    new_count: int | None = None
    last_cursor: str | None = None
    messages: list[MessageInfo] | None = None

    required_on_success = ("attempts", "new_count", "messages")
