"""HTTP route definitions for the account lifecycle service."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, Response, UploadFile, status
from pydantic import BaseModel, EmailStr, Field

from ..config import Settings
from ..domain.account import Account, AccountStatus
from ..domain.contracts import ProfileUpdate, Session
from ..domain.errors import AccountError, ImageNotFound
from ..domain.image import Image
from ..domain.service import AccountLifecycleService
from ..images.encoding import to_base64, to_data_uri
from .deps import enforce_rate_limit, get_app_settings, get_current_account, get_service, require_admin
from .errors import http_error


router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of an ``Account`` aggregate."""

    account_id: str
    email: str
    firstname: str | None
    status: str
    is_confirmed: bool
    image: str | None = Field(default=None, description="Thumbnail as a data URI")
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account, thumbnail: Image | None = None) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            firstname=account.firstname,
            status=account.status.value,
            is_confirmed=account.status is not AccountStatus.pending,
            image=(
                to_data_uri(thumbnail.thumbnail_bytes, thumbnail.thumbnail_content_type)
                if thumbnail
                else None
            ),
            created_at=account.created_at,
        )


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=256)


class RegisterResponse(BaseModel):
    """Registration outcome; ``activation_email`` is accepted, deferred or failed."""

    account: AccountResponse
    activation_email: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=256)


class ActivateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., max_length=256)


class ProfileUpdateRequest(BaseModel):
    firstname: str | None = Field(default=None, max_length=100)


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str = Field(..., max_length=256)
    repeat_password: str


class ChangeEmailRequest(BaseModel):
    email: EmailStr
    password: str


class SessionResponse(BaseModel):
    """Bearer token issued after login, activation or a credential change."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class StatusResponse(BaseModel):
    status: str


class ImageResponse(BaseModel):
    image_id: str
    content_type: str
    thumbnail_content_type: str
    width: int
    height: int
    created_at: datetime


class InlineImageResponse(BaseModel):
    """Both image representations base64-encoded for JSON clients."""

    image_id: str
    content_type: str
    data: str
    thumbnail_content_type: str
    thumbnail: str


ACCEPTED = StatusResponse(status="accepted")


def _session_response(response: Response, session: Session, settings: Settings) -> SessionResponse:
    response.set_cookie(
        settings.cookie_name,
        session.access_token,
        max_age=session.expires_in,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return SessionResponse(
        access_token=session.access_token,
        expires_in=session.expires_in,
        account=AccountResponse.from_domain(session.account),
    )


def _thumbnail_for(service: AccountLifecycleService, account: Account) -> Image | None:
    if account.profile_image_id is None:
        return None
    try:
        return service.get_image(account.account_id)
    except ImageNotFound:
        return None


@router.post("/accounts", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    payload: RegisterRequest,
    service: AccountLifecycleService = Depends(get_service),
) -> RegisterResponse:
    """Create a pending account and send its activation email."""
    enforce_rate_limit(request, "register", request.client.host if request.client else "unknown")
    try:
        result = service.register(payload.email, payload.password)
    except AccountError as exc:
        raise http_error(exc) from exc
    return RegisterResponse(
        account=AccountResponse.from_domain(result.account),
        activation_email=result.notification.status.value,
    )


@router.post("/accounts/activate", response_model=SessionResponse)
def activate(
    response: Response,
    payload: ActivateRequest,
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse:
    """Consume an activation code and sign the account in."""
    try:
        session = service.activate(payload.code)
    except AccountError as exc:
        raise http_error(exc) from exc
    return _session_response(response, session, settings)


@router.post(
    "/accounts/activation/resend",
    response_model=StatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def resend_activation(
    request: Request,
    payload: EmailRequest,
    service: AccountLifecycleService = Depends(get_service),
) -> StatusResponse:
    """Re-send the activation email; the answer is the same for every address."""
    enforce_rate_limit(request, "resend", payload.email)
    service.resend_activation(payload.email)
    return ACCEPTED


@router.post("/auth/login", response_model=SessionResponse)
def login(
    request: Request,
    response: Response,
    payload: LoginRequest,
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse:
    enforce_rate_limit(request, "login", payload.email)
    try:
        session = service.login(payload.email, payload.password)
    except AccountError as exc:
        raise http_error(exc) from exc
    return _session_response(response, session, settings)


@router.post("/auth/logout", response_model=StatusResponse)
def logout(response: Response, settings: Settings = Depends(get_app_settings)) -> StatusResponse:
    """Drop the session cookie; bearer tokens simply expire."""
    response.delete_cookie(settings.cookie_name, path="/")
    return StatusResponse(status="logged_out")


@router.post(
    "/password/reset-request",
    response_model=StatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def request_password_reset(
    request: Request,
    payload: EmailRequest,
    service: AccountLifecycleService = Depends(get_service),
) -> StatusResponse:
    """Start a reset; unknown addresses get the same answer as known ones."""
    enforce_rate_limit(request, "reset", payload.email)
    service.request_reset(payload.email)
    return ACCEPTED


@router.post("/password/reset", response_model=SessionResponse)
def reset_password(
    response: Response,
    payload: ResetPasswordRequest,
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse:
    try:
        session = service.complete_reset(payload.code, payload.password)
    except AccountError as exc:
        raise http_error(exc) from exc
    return _session_response(response, session, settings)


@router.get("/accounts/me", response_model=AccountResponse)
def read_me(
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    return AccountResponse.from_domain(account, _thumbnail_for(service, account))


@router.patch("/accounts/me", response_model=AccountResponse)
def update_me(
    payload: ProfileUpdateRequest,
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    try:
        updated = service.update_profile(account.account_id, ProfileUpdate(firstname=payload.firstname))
    except AccountError as exc:
        raise http_error(exc) from exc
    return AccountResponse.from_domain(updated, _thumbnail_for(service, updated))


@router.put("/accounts/me/password", response_model=SessionResponse)
def change_password(
    response: Response,
    payload: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse:
    """Replace the password; earlier tokens stop working and a fresh one is returned."""
    if payload.new_password != payload.repeat_password:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "password_mismatch", "message": "passwords do not match"},
        )
    try:
        session = service.change_password(account.account_id, payload.old_password, payload.new_password)
    except AccountError as exc:
        raise http_error(exc) from exc
    return _session_response(response, session, settings)


@router.put("/accounts/me/email", response_model=SessionResponse)
def change_email(
    response: Response,
    payload: ChangeEmailRequest,
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionResponse:
    try:
        session = service.change_email(account.account_id, payload.email, payload.password)
    except AccountError as exc:
        raise http_error(exc) from exc
    return _session_response(response, session, settings)


@router.delete("/accounts/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_me(
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    try:
        service.delete(account.account_id)
    except AccountError as exc:
        raise http_error(exc) from exc
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(settings.cookie_name, path="/")
    return response


@router.post("/accounts/me/image", response_model=ImageResponse, status_code=status.HTTP_201_CREATED)
def upload_image(
    file: UploadFile = File(...),
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> ImageResponse:
    """Accept a multipart ``file`` and make it the profile picture.

    At most one byte past the ceiling is read so oversized uploads are
    rejected without buffering them whole.
    """
    raw = file.file.read(settings.image_max_bytes + 1)
    try:
        image = service.upload_image(account.account_id, raw, file.content_type)
    except AccountError as exc:
        raise http_error(exc) from exc
    return ImageResponse(
        image_id=image.image_id,
        content_type=image.original_content_type,
        thumbnail_content_type=image.thumbnail_content_type,
        width=image.width,
        height=image.height,
        created_at=image.created_at,
    )


@router.get("/accounts/me/image")
def download_image(
    variant: Literal["original", "thumbnail"] = Query(default="original"),
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
) -> Response:
    """Return the stored image bytes directly."""
    try:
        image = service.get_image(account.account_id)
    except AccountError as exc:
        raise http_error(exc) from exc
    content, content_type = image.variant(variant)
    return Response(content=content, media_type=content_type)


@router.get("/accounts/me/image.json", response_model=InlineImageResponse)
def inline_image(
    account: Account = Depends(get_current_account),
    service: AccountLifecycleService = Depends(get_service),
) -> InlineImageResponse:
    """Return both representations base64-encoded inside JSON."""
    try:
        image = service.get_image(account.account_id)
    except AccountError as exc:
        raise http_error(exc) from exc
    return InlineImageResponse(
        image_id=image.image_id,
        content_type=image.original_content_type,
        data=to_base64(image.original_bytes),
        thumbnail_content_type=image.thumbnail_content_type,
        thumbnail=to_base64(image.thumbnail_bytes),
    )


@router.post("/admin/accounts/{account_id}/suspend", response_model=AccountResponse)
def suspend_account(
    account_id: str,
    actor: str = Depends(require_admin),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.suspend(account_id, actor=actor)
    except AccountError as exc:
        raise http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admin/accounts/{account_id}/reinstate", response_model=AccountResponse)
def reinstate_account(
    account_id: str,
    actor: str = Depends(require_admin),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.reinstate(account_id, actor=actor)
    except AccountError as exc:
        raise http_error(exc) from exc
    return AccountResponse.from_domain(account)
