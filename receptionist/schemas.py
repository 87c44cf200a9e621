from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GdprCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str | None = None
    email: str | None = None
    phone: str | None = None


class CustomersDataRequestPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shop_id: int | None = None
    shop_domain: str
    customer: GdprCustomer = Field(default_factory=GdprCustomer)
    orders_requested: list[int] = Field(default_factory=list)


class CustomersRedactPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shop_id: int | None = None
    shop_domain: str
    customer: GdprCustomer = Field(default_factory=GdprCustomer)
    orders_to_redact: list[int] = Field(default_factory=list)


class ShopRedactPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shop_id: int | None = None
    shop_domain: str


class ScopesUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    previous: list[str] = Field(default_factory=list)
    current: list[str] = Field(default_factory=list)
    updated_at: str | None = None


class VapiFunction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def parse_arguments(cls, value: Any) -> dict[str, Any]:
        # The vendor sends arguments either as an object or as a JSON-encoded string.
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as exc:
                raise ValueError("function.arguments must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("function.arguments must be a JSON object")
        return value


class VapiToolCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    type: str | None = None
    function: VapiFunction = Field(default_factory=VapiFunction)


class VapiCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    customer: dict[str, Any] = Field(default_factory=dict)


class VapiMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str | None = None
    toolCallList: list[VapiToolCall] = Field(default_factory=list)
    call: VapiCall | None = None
    transcript: str | None = None
    summary: str | None = None
    durationSeconds: float | None = None
    endedReason: str | None = None
    artifact: dict[str, Any] = Field(default_factory=dict)
    analysis: dict[str, Any] = Field(default_factory=dict)

    @field_validator("toolCallList", mode="before")
    @classmethod
    def default_tool_calls(cls, value: Any) -> Any:
        return value or []


class VapiServerMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: VapiMessage = Field(default_factory=VapiMessage)


class ToolCallResult(BaseModel):
    toolCallId: str
    result: str


class ToolCallResponse(BaseModel):
    results: list[ToolCallResult]


class WebhookOutcome(BaseModel):
    ok: bool
    topic: str
    shopDomain: str | None = None
    detail: str | None = None
    deleted: dict[str, int] = Field(default_factory=dict)


class AssistantOptions(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str | None = Field(default=None, max_length=80)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    voice_provider: str | None = None
    voice_id: str | None = None
    first_message: str | None = None
    end_call_message: str | None = None
    system_prompt: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
