"""
Authentication endpoints for SongVideo.

Registration and login issuing JWT bearer tokens. Every video project is
owned by the user in the token.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.database import get_async_session
from ..core.security import create_access_token, hash_password, verify_password
from ..models.user import User
from ..schemas.video_project import ErrorResponse

router = APIRouter()


# =============================================================================
# Pydantic Schemas
# =============================================================================


class UserRegisterRequest(BaseModel):
    """Request schema for user registration."""

    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not v.replace("_", "").isalnum():
            raise ValueError(
                "Username can only contain letters, numbers, and underscores"
            )
        return v


class UserRegisterResponse(BaseModel):
    id: str
    username: str
    created_at: datetime

    model_config = {"from_attributes": True}


class UserLoginRequest(BaseModel):
    username: str
    password: str


class UserInfo(BaseModel):
    id: str
    username: str


class UserLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserInfo


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/register",
    response_model=UserRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Validation error"}},
)
async def register(
    data: UserRegisterRequest,
    db: AsyncSession = Depends(get_async_session),
) -> UserRegisterResponse:
    """
    Register a new user.

    Raises:
        HTTPException 400: If username already exists
    """
    result = await db.execute(select(User).where(User.username == data.username))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": "Username already exists",
                "details": {"field": "username"},
            },
        )

    user = User(
        username=data.username,
        password_hash=hash_password(data.password),
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)

    return UserRegisterResponse.model_validate(user)


@router.post(
    "/login",
    response_model=UserLoginResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
)
async def login(
    data: UserLoginRequest,
    db: AsyncSession = Depends(get_async_session),
) -> UserLoginResponse:
    """
    Login and get a JWT access token.

    Raises:
        HTTPException 401: If credentials are invalid
    """
    result = await db.execute(select(User).where(User.username == data.username))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "unauthorized",
                "message": "Invalid username or password",
            },
        )

    return UserLoginResponse(
        access_token=create_access_token(user_id=user.id),
        token_type="bearer",
        expires_in=get_settings().access_token_expire_hours * 3600,
        user=UserInfo(id=user.id, username=user.username),
    )
