from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "invalid_redirect_uri",
    "client_inactive",
    "invalid_scope",
    "unauthorized_client",
})


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
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# auth


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=128)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    # Falls back to the refresh_token cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    refresh_token: str


class PrincipalResponse(BaseModel):
    user_id: str
    email: str
    is_admin: bool
    auth_method: str
    client_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)


# api keys


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    prefix: str
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class ApiKeyCreatedResponse(BaseModel):
    key: str = Field(..., description="Full key; shown once and never again")
    api_key: ApiKeyResponse


class ApiKeyListResponse(BaseModel):
    items: List[ApiKeyResponse]


class ValidateKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(..., alias="apiKey", min_length=1, max_length=512)


# oauth


class ClientPublicInfo(BaseModel):
    """What the consent screen may show about a client; dumped with camelCase keys."""

    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = Field(default=None, serialization_alias="logoUrl")
    website_url: Optional[str] = Field(default=None, serialization_alias="websiteUrl")


class AuthorizeRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=128)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)
    response_type: Literal["code"] = "code"
    scope: Optional[str] = Field(default=None, max_length=1024)
    state: Optional[str] = Field(default=None, max_length=1024)
    code_challenge: Optional[str] = Field(default=None, max_length=128)
    code_challenge_method: Optional[Literal["plain", "S256"]] = None


class AuthorizeResponse(BaseModel):
    redirect_to: str
    code: str
    state: Optional[str] = None


class TokenRequest(BaseModel):
    grant_type: Literal["authorization_code", "refresh_token"]
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str = Field(..., min_length=1, max_length=512)
    code: Optional[str] = Field(default=None, max_length=512)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)
    code_verifier: Optional[str] = Field(default=None, max_length=128)
    refresh_token: Optional[str] = Field(default=None, max_length=512)

    @model_validator(mode="after")
    def _require_grant_fields(self):
        if self.grant_type == "authorization_code" and (not self.code or not self.redirect_uri):
            raise ValueError("code and redirect_uri are required for authorization_code")
        if self.grant_type == "refresh_token" and not self.refresh_token:
            raise ValueError("refresh_token is required for refresh_token grant")
        return self


class RevokeRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str = Field(..., min_length=1, max_length=512)
    token_type_hint: Optional[Literal["access_token", "refresh_token"]] = None


class ClientCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    redirect_uris: List[str] = Field(..., min_length=1, max_length=20)
    client_id: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=1000)
    logo_url: Optional[str] = Field(default=None, max_length=2048)
    website_url: Optional[str] = Field(default=None, max_length=2048)
    scopes: Optional[List[str]] = None
    grant_types: Optional[List[Literal["authorization_code", "refresh_token"]]] = None
    trusted: bool = False


class ClientUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    logo_url: Optional[str] = Field(default=None, max_length=2048)
    website_url: Optional[str] = Field(default=None, max_length=2048)
    redirect_uris: Optional[List[str]] = Field(default=None, min_length=1, max_length=20)
    trusted: Optional[bool] = None


class ClientResponse(BaseModel):
    client_id: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    redirect_uris: List[str]
    scopes: List[str]
    grant_types: List[str]
    trusted: bool
    active: bool
    created_at: datetime


class ClientCreatedResponse(BaseModel):
    client: ClientResponse
    client_secret: str = Field(..., description="Shown once and never again")


# admin users


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    is_admin: bool
    created_at: datetime
    updated_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class UserUpdateRequest(BaseModel):
    # The admin flag is only ever set by the bootstrap script
    model_config = ConfigDict(extra="forbid")

    email_verified: Optional[bool] = None
