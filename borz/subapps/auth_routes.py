from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from borz.auth import TokenIdentity, get_current_identity, get_session_tokens
from borz.database import get_db
from borz.schemas.auth import (
    AuthCheckOut,
    AuthResponse,
    ForgotPasswordOut,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileOut,
    ResetPasswordRequest,
    SignupRequest,
)
from borz.schemas.chat import SuccessOut
from borz.services.auth_service import AuthService


router = APIRouter(prefix="/auth", tags=["auth"])


def _service(request: Request, db: Session) -> AuthService:
    return AuthService(
        db,
        get_session_tokens(request),
        expose_reset_token=request.app.state.settings.expose_reset_token,
    )


# Creates an account and returns a session token
@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, request: Request, db: Session = Depends(get_db)) -> AuthResponse:
    return _service(request, db).signup(payload)


@router.post("/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> AuthResponse:
    return _service(request, db).login(payload)


# Same response whether or not the email is registered
@router.post("/forgot-password", response_model_exclude_none=True)
def forgot_password(payload: ForgotPasswordRequest, request: Request, db: Session = Depends(get_db)) -> ForgotPasswordOut:
    return _service(request, db).forgot_password(payload.email)


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, request: Request, db: Session = Depends(get_db)) -> SuccessOut:
    _service(request, db).reset_password(payload)
    return SuccessOut()


@router.get("/me")
def me(
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ProfileOut:
    return _service(request, db).get_profile(identity.user_id)


# Never 401s; reports whether the caller's token is valid
@router.get("/check", response_model_exclude_none=True)
def check(request: Request, db: Session = Depends(get_db)) -> AuthCheckOut:
    return _service(request, db).check(request.headers.get("Authorization"))
