from __future__ import annotations

from datetime import timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Response
from fastapi.responses import JSONResponse

from koauth.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    AuthorizeRequest,
    AuthorizeResponse,
    AuthResponse,
    ClientCreatedResponse,
    ClientCreateRequest,
    ClientPublicInfo,
    ClientResponse,
    ClientUpdateRequest,
    Envelope,
    LoginRequest,
    PrincipalResponse,
    RefreshRequest,
    RevokeRequest,
    SignupRequest,
    TokenRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
    ValidateKeyRequest,
)
from koauth.logging import get_logger
from koauth.service.errors import (
    CredentialError,
    ForbiddenError,
    InvalidCredential,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from koauth.service.oauth import GRANT_TYPES
from koauth.service.runtime import get_runtime
from koauth.service.validator import Principal
from koauth.storage.models import DEFAULT_CLIENT_SCOPES, ApiKey, OAuthClient, User

logger = get_logger(__name__)

router = APIRouter()

SESSION_COOKIE = "session_id"
REFRESH_COOKIE = "refresh_token"


def get_principal(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Cookie(None),
) -> Principal:
    runtime = get_runtime()
    return runtime.validator.authenticate_request(authorization, session_id)


def get_session_principal(principal: Principal = Depends(get_principal)) -> Principal:
    """Account management is only open to interactive sessions."""
    if principal.kind != "session":
        raise ForbiddenError("this action requires a browser session")
    return principal


def get_admin_principal(principal: Principal = Depends(get_session_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("admin access required")
    return principal


def _apply_session_cookies(
    response: Response, session_id: str, refresh_token: str, expires_at, *, secure: bool
) -> None:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    for name, value in ((SESSION_COOKIE, session_id), (REFRESH_COOKIE, refresh_token)):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=secure,
            samesite="lax",
            expires=expires_at,
            path="/",
        )


def _clear_session_cookies(response: Response, *, secure: bool) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


def _api_key_response(key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=key.id,
        name=key.name,
        prefix=key.prefix,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
        created_at=key.created_at,
    )


def _client_response(client: OAuthClient) -> ClientResponse:
    return ClientResponse(
        client_id=client.client_id,
        name=client.name,
        description=client.description,
        logo_url=client.logo_url,
        website_url=client.website_url,
        redirect_uris=list(client.redirect_uris),
        scopes=list(client.scopes),
        grant_types=list(client.grant_types),
        trusted=client.trusted,
        active=client.active,
        created_at=client.created_at,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        is_admin=user.is_admin,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _oauth_error(status_code: int, error: str, description: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": description},
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


def _redirect_with_params(redirect_uri: str, params: dict) -> str:
    parsed = urlparse(redirect_uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
def signup(body: SignupRequest, response: Response):
    """Create an account and open a session for it."""
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    user = runtime.users.create_user(body.email, body.password)
    issued = runtime.sessions.create_session(user.id)
    _apply_session_cookies(
        response,
        issued.session_id,
        issued.refresh_token,
        issued.expires_at,
        secure=runtime.settings.session_cookie_secure,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=issued.session_id,
            session_expires_at=issued.expires_at,
            refresh_token=issued.refresh_token,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(
    body: LoginRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
    x_forwarded_for: Optional[str] = Header(None),
):
    runtime = get_runtime()
    try:
        user = runtime.users.authenticate_password(body.email, body.password)
    except CredentialError as exc:
        logger.info("login_rejected", reason=exc.kind.value)
        raise Unauthorized("invalid credentials") from None
    ip_address = x_forwarded_for.split(",")[0].strip() if x_forwarded_for else None
    issued = runtime.sessions.create_session(
        user.id, ip_address=ip_address, user_agent=user_agent
    )
    _apply_session_cookies(
        response,
        issued.session_id,
        issued.refresh_token,
        issued.expires_at,
        secure=runtime.settings.session_cookie_secure,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=issued.session_id,
            session_expires_at=issued.expires_at,
            refresh_token=issued.refresh_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the refresh token. The presented token stops working immediately."""
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    if not presented:
        raise Unauthorized()
    rotated = runtime.sessions.validate_and_rotate(presented)
    _apply_session_cookies(
        response,
        rotated.session_id,
        rotated.refresh_token,
        rotated.expires_at,
        secure=runtime.settings.session_cookie_secure,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=rotated.user_id,
            session_id=rotated.session_id,
            session_expires_at=rotated.expires_at,
            refresh_token=rotated.refresh_token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    response: Response,
    session_id: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    if session_id:
        runtime.sessions.revoke(session_id)
    if refresh_token:
        runtime.sessions.revoke_by_refresh_token(refresh_token)
    _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(status="ok", data={"message": "session revoked"})


# current principal


@router.get("/api/me", response_model=Envelope, tags=["me"])
def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            is_admin=principal.is_admin,
            auth_method=principal.kind,
            client_id=principal.client_id,
            scopes=principal.scopes,
        ),
    )


@router.post("/api/me/sessions/revoke-all", response_model=Envelope, tags=["me"])
def revoke_all_sessions(
    response: Response, principal: Principal = Depends(get_session_principal)
):
    runtime = get_runtime()
    count = runtime.sessions.revoke_all_for_user(principal.user_id)
    _clear_session_cookies(response, secure=runtime.settings.session_cookie_secure)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/api/me/api-keys", response_model=Envelope, tags=["api-keys"])
def list_api_keys(principal: Principal = Depends(get_session_principal)):
    runtime = get_runtime()
    keys = runtime.api_keys.list_keys(principal.user_id)
    return Envelope(
        status="ok", data=ApiKeyListResponse(items=[_api_key_response(k) for k in keys])
    )


@router.post("/api/me/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
def create_api_key(
    body: ApiKeyCreateRequest, principal: Principal = Depends(get_session_principal)
):
    runtime = get_runtime()
    issued = runtime.api_keys.issue(principal.user_id, body.name, body.expires_at)
    return Envelope(
        status="ok",
        data=ApiKeyCreatedResponse(key=issued.raw_key, api_key=_api_key_response(issued.key)),
    )


@router.delete("/api/me/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_session_principal),
):
    runtime = get_runtime()
    if not runtime.api_keys.revoke(key_id, user_id=principal.user_id):
        raise NotFoundError("api key not found")
    return Envelope(status="ok", data={"message": "api key revoked"})


@router.post("/api/validate-key", tags=["api-keys"])
def validate_key(body: ValidateKeyRequest):
    """Public check used by other services. Same answer for every failure."""
    runtime = get_runtime()
    result = runtime.validator.validate_key(body.api_key)
    return JSONResponse(status_code=200 if result["valid"] else 401, content=result)


# oauth


@router.get("/api/oauth/clients/{client_id}", response_model=Envelope, tags=["oauth"])
def client_public_info(client_id: str = Path(..., max_length=128)):
    runtime = get_runtime()
    info = runtime.oauth.get_client_public_info(client_id)
    return Envelope(status="ok", data=ClientPublicInfo(**info).model_dump(by_alias=True))


@router.post("/oauth/authorize", response_model=Envelope, tags=["oauth"])
def authorize(body: AuthorizeRequest, principal: Principal = Depends(get_session_principal)):
    """Record the signed-in user's consent and mint an authorization code."""
    runtime = get_runtime()
    code = runtime.oauth.issue_authorization_code(
        body.client_id,
        principal.user_id,
        body.redirect_uri,
        body.scope,
        code_challenge=body.code_challenge,
        code_challenge_method=body.code_challenge_method,
    )
    return Envelope(
        status="ok",
        data=AuthorizeResponse(
            redirect_to=_redirect_with_params(
                body.redirect_uri, {"code": code, "state": body.state}
            ),
            code=code,
            state=body.state,
        ),
    )


@router.post("/oauth/token", tags=["oauth"])
def token(body: TokenRequest):
    runtime = get_runtime()
    try:
        client = runtime.oauth.authenticate_client(body.client_id, body.client_secret)
    except CredentialError as exc:
        logger.warning("oauth_client_auth_failed", client_id=body.client_id, reason=exc.kind.value)
        return _oauth_error(401, "invalid_client", "Invalid client credentials")

    try:
        runtime.oauth.check_grant_type(client, body.grant_type)
        if body.grant_type == "authorization_code":
            pair = runtime.oauth.redeem_code(
                body.code or "", body.client_id, body.redirect_uri or "", body.code_verifier
            )
        else:
            pair = runtime.oauth.refresh_token(body.refresh_token or "", body.client_id)
    except CredentialError as exc:
        if not exc.normalized:
            return _oauth_error(400, exc.error_code, exc.message)
        logger.info(
            "oauth_grant_rejected",
            client_id=body.client_id,
            grant_type=body.grant_type,
            reason=exc.kind.value,
        )
        return _oauth_error(400, "invalid_grant", "Invalid, expired or used grant")
    return JSONResponse(
        content=pair.as_response(),
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


@router.post("/oauth/revoke", tags=["oauth"])
def revoke(body: RevokeRequest):
    """Revoke one of the calling client's tokens and its descendants. Always 200."""
    runtime = get_runtime()
    try:
        client = runtime.oauth.authenticate_client(body.client_id, body.client_secret)
    except CredentialError as exc:
        logger.warning("oauth_client_auth_failed", client_id=body.client_id, reason=exc.kind.value)
        return _oauth_error(401, "invalid_client", "Invalid client credentials")
    # Tokens issued to other clients are silently left alone
    runtime.oauth.revoke_token(body.token, client_id=client.client_id)
    return JSONResponse(content={}, headers={"Cache-Control": "no-store"})


@router.get("/oauth/userinfo", tags=["oauth"])
def userinfo(authorization: Optional[str] = Header(None)):
    """OpenID-style claims for the bearer access token, limited by its scopes."""
    runtime = get_runtime()
    scheme, _, raw_token = (authorization or "").partition(" ")
    try:
        if scheme.lower() != "bearer" or not raw_token.strip():
            raise InvalidCredential("missing bearer token")
        claims = runtime.oauth.userinfo(raw_token.strip())
    except CredentialError as exc:
        logger.info("userinfo_rejected", reason=exc.kind.value)
        response = _oauth_error(401, "invalid_token", "Invalid or expired access token")
        response.headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
        return response
    return JSONResponse(content=claims, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})


@router.get("/.well-known/oauth-authorization-server", tags=["oauth"])
def authorization_server_metadata():
    """RFC 8414 discovery document rooted at ``APP_BASE_URL``."""
    issuer = get_runtime().settings.app_base_url.rstrip("/")
    return JSONResponse(
        content={
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/oauth/authorize",
            "token_endpoint": f"{issuer}/oauth/token",
            "revocation_endpoint": f"{issuer}/oauth/revoke",
            "userinfo_endpoint": f"{issuer}/oauth/userinfo",
            "scopes_supported": list(DEFAULT_CLIENT_SCOPES),
            "response_types_supported": ["code"],
            "grant_types_supported": list(GRANT_TYPES),
            "code_challenge_methods_supported": ["S256", "plain"],
            "token_endpoint_auth_methods_supported": ["client_secret_post"],
        },
        headers={"Cache-Control": "public, max-age=3600"},
    )


# admin


@router.get("/api/admin/clients", response_model=Envelope, tags=["admin"])
def list_clients(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=[_client_response(c) for c in runtime.oauth.list_clients()]
    )


@router.post("/api/admin/clients", response_model=Envelope, status_code=201, tags=["admin"])
def create_client(body: ClientCreateRequest, principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    registered = runtime.oauth.register_client(
        body.name,
        body.redirect_uris,
        client_id=body.client_id,
        description=body.description,
        logo_url=body.logo_url,
        website_url=body.website_url,
        scopes=body.scopes,
        grant_types=body.grant_types,
        trusted=body.trusted,
    )
    return Envelope(
        status="ok",
        data=ClientCreatedResponse(
            client=_client_response(registered.client),
            client_secret=registered.client_secret,
        ),
    )


@router.post("/api/admin/clients/{client_id}/activate", response_model=Envelope, tags=["admin"])
def activate_client(
    client_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_principal),
):
    client = get_runtime().oauth.set_client_active(client_id, True)
    return Envelope(status="ok", data=_client_response(client))


@router.post("/api/admin/clients/{client_id}/deactivate", response_model=Envelope, tags=["admin"])
def deactivate_client(
    client_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_principal),
):
    client = get_runtime().oauth.set_client_active(client_id, False)
    return Envelope(status="ok", data=_client_response(client))


@router.post(
    "/api/admin/clients/{client_id}/regenerate-secret", response_model=Envelope, tags=["admin"]
)
def regenerate_client_secret(
    client_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_principal),
):
    registered = get_runtime().oauth.regenerate_client_secret(client_id)
    return Envelope(
        status="ok",
        data=ClientCreatedResponse(
            client=_client_response(registered.client),
            client_secret=registered.client_secret,
        ),
    )


@router.get("/api/admin/clients/{client_id}", response_model=Envelope, tags=["admin"])
def get_client(
    client_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_principal),
):
    client = get_runtime().oauth.get_client(client_id)
    return Envelope(status="ok", data=_client_response(client))


@router.patch("/api/admin/clients/{client_id}", response_model=Envelope, tags=["admin"])
def update_client(
    body: ClientUpdateRequest,
    client_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_principal),
):
    client = get_runtime().oauth.update_client(client_id, **body.model_dump(exclude_unset=True))
    return Envelope(status="ok", data=_client_response(client))


@router.get("/api/admin/users", response_model=Envelope, tags=["admin"])
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=255),
    principal: Principal = Depends(get_admin_principal),
):
    result = get_runtime().users.list_users(search, page=page, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_response(u) for u in result.users],
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/api/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
def get_user(
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_principal),
):
    return Envelope(status="ok", data=_user_response(get_runtime().users.get_user(user_id)))


@router.patch("/api/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
def update_user(
    body: UserUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_principal),
):
    if body.email_verified is None:
        raise ValidationError("no fields to update")
    user = get_runtime().users.set_email_verified(user_id, body.email_verified)
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/api/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
def delete_user(
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    if not runtime.users.delete_user(user_id, acting_user_id=principal.user_id):
        raise NotFoundError("user not found")
    return Envelope(status="ok", data={"message": "user deleted"})
