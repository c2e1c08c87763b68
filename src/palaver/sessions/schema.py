from typing import Any

from pydantic import BaseModel, Field


class SessionRecord(BaseModel):
    id: int
    model: str
    created_at: str
    updated_at: str
    title: str | None = None
    project_path: str | None = None
    system_prompt_snapshot: str | None = None
    owner_id: int | None = None


class MessageRecord(BaseModel):
    id: int
    session_id: int
    role: str
    content: str
    thinking: str | None = None
    model: str | None = None
    preset_id: int | None = None
    tool_calls: list[dict[str, Any]] | None = None
    created_at: str


class SessionData(BaseModel):
    session: SessionRecord
    messages: list[MessageRecord] = Field(default_factory=list)


class SessionSummary(BaseModel):
    id: int
    model: str
    created_at: str
    updated_at: str
    title: str | None = None
    message_count: int = 0
    preview: str | None = None


class ParameterPreset(BaseModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    repeat_penalty: float | None = None
    num_ctx: int | None = None

    def to_options(self) -> dict[str, Any]:
        return self.model_dump(
            include={"temperature", "top_p", "top_k", "repeat_penalty", "num_ctx"},
            exclude_none=True,
        )
