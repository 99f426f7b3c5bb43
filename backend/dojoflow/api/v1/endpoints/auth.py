from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from dojoflow.core.auth import get_current_user
from dojoflow.core.database import get_db
from dojoflow.models.user import User
from dojoflow.schemas.auth import LoginRequest, TokenResponse, UserProfileResponse
from dojoflow.services.auth import create_access_token, get_user_by_email, verify_password

router = APIRouter()


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = get_user_by_email(db, body.email.lower())
    if user is None or not verify_password(body.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return TokenResponse(access_token=create_access_token(user.id))


@router.get("/me", response_model=UserProfileResponse)
def get_me(current_user: User = Depends(get_current_user)):
    return current_user
