from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Identities are e-mail addresses in practice; generous upper bounds only
MAX_IDENTITY_LENGTH = 320
MAX_SECRET_LENGTH = 1024
MAX_PROMPT_LENGTH = 20000

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "payment_required",
    "forbidden",
    "not_found",
    "conflict",
    "client_closed_request",
    "server_error",
    "upstream_error",
    "upstream_timeout",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"invalid error code '{value}', must be one of: {sorted(_VALID_ERROR_CODES)}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CredentialsRequest(BaseModel):
    """Signup/signin body; accepts the legacy ``email``/``password`` names too."""

    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(
        default="",
        max_length=MAX_IDENTITY_LENGTH,
        validation_alias=AliasChoices("identity", "email"),
    )
    secret: str = Field(
        default="",
        max_length=MAX_SECRET_LENGTH,
        validation_alias=AliasChoices("secret", "password"),
    )


class TokenResponse(BaseModel):
    token: str


class SigninResponse(BaseModel):
    token: str
    entitled: bool


class VerifyTokenResponse(BaseModel):
    valid: bool
    identity: str
    entitled: bool


class GenerateRequest(BaseModel):
    prompt: Optional[str] = Field(default=None, max_length=MAX_PROMPT_LENGTH)


class GenerateResponse(BaseModel):
    output: str
    explanation: str


class MarkEntitledRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(
        default="",
        max_length=MAX_IDENTITY_LENGTH,
        validation_alias=AliasChoices("identity", "email"),
    )


class PaymentWebhookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    identity: str = Field(
        default="",
        max_length=MAX_IDENTITY_LENGTH,
        validation_alias=AliasChoices("identity", "email"),
    )
    payment_status: str = Field(
        default="",
        max_length=64,
        validation_alias=AliasChoices("paymentStatus", "payment_status"),
    )

    @property
    def completed(self) -> bool:
        return self.payment_status.strip().upper() == "COMPLETED"


class OkResponse(BaseModel):
    ok: bool = True


class PaymentWebhookResponse(BaseModel):
    ok: bool = True
    entitled: bool


class LogoutRequest(BaseModel):
    all: bool = False


class LogoutResponse(BaseModel):
    ok: bool = True
    revoked: int


class HealthResponse(BaseModel):
    status: str
    identities: int
    sessions: int
    backend: str
    version: str
