"""Per-node-type config models — validated before a run starts.

Unknown keys are allowed (builders attach UI-only settings); only the keys the
engine reads are typed.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowengine.config import settings


class CommonConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    timeout: int | None = Field(default=None, ge=0)
    retries: int | None = Field(default=None, ge=0, le=10)
    failurePolicy: Literal["fail_fast", "skip_downstream", "use_fallback_value"] | None = None
    fallbackValue: Any = None


class InputConfig(CommonConfig):
    name: str | None = None
    value: Any = None
    text: Any = None
    defaultValue: Any = None
    required: bool = True
    inputType: str | None = None


class OutputConfig(CommonConfig):
    format: Literal["json", "text", "markdown", "html"] = "json"

    @field_validator("format", mode="before")
    @classmethod
    def _normalise_format(cls, value: Any) -> Any:
        if value in (None, ""):
            return "json"
        if isinstance(value, str):
            lowered = value.lower()
            return {"structured": "json", "plain": "text", "markup": "html"}.get(lowered, lowered)
        return value


class MergeConfig(CommonConfig):
    separator: str = " "


class ConditionConfig(CommonConfig):
    operator: Literal["truthy", "falsy", "equals", "notEquals", "gt", "lt", "contains", "isEmpty"] = "truthy"
    compareValue: Any = None
    humanCondition: str | None = None
    expression: str | None = None

    @field_validator("operator", mode="before")
    @classmethod
    def _default_operator(cls, value: Any) -> Any:
        return "truthy" if value in (None, "") else value


class DelayConfig(CommonConfig):
    duration: float = 1000


class LoopConfig(CommonConfig):
    maxIterations: int | None = Field(default=None, ge=0)
    items: list[Any] | None = None
    continueOnError: bool = False


class LoopEndConfig(CommonConfig):
    loopId: str | None = None


class TemplateConfig(CommonConfig):
    template: str = ""
    values: dict[str, Any] = Field(default_factory=dict)


class MapConfig(CommonConfig):
    template: str


class JsonParseConfig(CommonConfig):
    pass


class HttpRequestConfig(CommonConfig):
    url: str | None = None
    method: str = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    followRedirects: bool = True
    allowOnly: str | list[str] | None = None
    denyHosts: str | list[str] | None = None
    idempotencyKey: str | None = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if value in (None, ""):
            return "GET"
        return str(value).upper()

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        if value not in ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"):
            raise ValueError(f"unsupported HTTP method '{value}'")
        return value


class ChatConfig(CommonConfig):
    prompt: str | None = None
    system: str | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    maxTokens: int | None = Field(default=None, gt=0)
    stream: bool = False


class EmbeddingsConfig(CommonConfig):
    text: str | None = None
    model: str | None = None


_DALL_E_2_SIZES = ("256x256", "512x512", "1024x1024")
_DALL_E_3_SIZES = ("1024x1024", "1792x1024", "1024x1792")


class ImageConfig(CommonConfig):
    prompt: str | None = None
    model: str | None = None
    size: str = "1024x1024"
    quality: str = "standard"

    @model_validator(mode="after")
    def _check_model_options(self) -> "ImageConfig":
        model = self.model or settings.LLM_IMAGE_MODEL
        if model == "dall-e-2":
            if self.quality != "standard":
                raise ValueError("quality 'hd' is only supported by dall-e-3")
            if self.size not in _DALL_E_2_SIZES:
                raise ValueError(f"size '{self.size}' is not valid for dall-e-2; use one of {', '.join(_DALL_E_2_SIZES)}")
        elif model == "dall-e-3":
            if self.quality not in ("standard", "hd"):
                raise ValueError(f"quality '{self.quality}' is not valid for dall-e-3")
            if self.size not in _DALL_E_3_SIZES:
                raise ValueError(f"size '{self.size}' is not valid for dall-e-3; use one of {', '.join(_DALL_E_3_SIZES)}")
        return self
