"""Account registration, login and online-user listing."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..schemas import auth as schemas
from ..services import auth as auth_service
from ..services.accounts import AccountExistsError, InvalidCredentialsError, account_store
from ..services.calls import coordinator

router = APIRouter()

bearer_scheme = HTTPBearer(auto_error=False)


async def current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> schemas.Identity:
    """Resolve the bearer token into a verified identity."""

    token = credentials.credentials if credentials else None
    try:
        return auth_service.decode_token(token)
    except auth_service.AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def _auth_response(identity: schemas.Identity) -> schemas.AuthResponse:
    issued = auth_service.issue_token(identity)
    return schemas.AuthResponse(
        token=issued.token,
        expires_in=issued.expires_in,
        user=schemas.UserOut(id=identity.id, name=identity.name, email=identity.email or ""),
    )


@router.post("/register", response_model=schemas.AuthResponse)
async def register(payload: schemas.RegisterRequest) -> schemas.AuthResponse:
    """Create an account and return an access token."""

    try:
        account = await account_store.register(name=payload.name, email=payload.email, password=payload.password)
    except AccountExistsError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _auth_response(account.identity())


@router.post("/login", response_model=schemas.AuthResponse)
async def login(payload: schemas.LoginRequest) -> schemas.AuthResponse:
    """Exchange email and password for an access token."""

    try:
        account = await account_store.authenticate(email=payload.email, password=payload.password)
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    return _auth_response(account.identity())


@router.get("/users", response_model=list[schemas.OnlineUser])
async def list_online_users(
    identity: schemas.Identity = Depends(current_identity),
) -> list[schemas.OnlineUser]:
    """Return everyone currently online except the requester."""

    return [
        schemas.OnlineUser(id=user.id, name=user.name, email=user.email)
        for user in coordinator.online(exclude=identity.id)
    ]
