from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from freshmart.core.security import decode_access_token
from freshmart.db.session import get_session
from freshmart.models.user import User, UserRole
from freshmart.services.auth import AuthService
from freshmart.services.coupon import CouponService
from freshmart.services.stacking import cart_sessions

router = APIRouter()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/token")
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="api/auth/token", auto_error=False)


class Token(BaseModel):
    access_token: str
    token_type: str

class UserCreate(BaseModel):
    username: str = Field(min_length=3)
    email: str
    password: str = Field(min_length=6)
    mobile_number: Optional[str] = None

def get_auth_service(session: Session = Depends(get_session)) -> AuthService:
    return AuthService(session)

def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role.value,
        "mobileNumber": user.mobile_number,
    }

def open_cart_session(user: User, session: Session):
    """Create the user's cart context on sign-in."""
    coupons = CouponService(session)
    return cart_sessions.open(
        user.id,
        user.username,
        coupons.snapshot(user),
        has_placed_order=coupons.count_orders(user.id) > 0,
    )

def _user_from_token(token: str, session: Session) -> Optional[User]:
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None
    email: str = payload.get("sub")
    if email is None:
        return None
    user = session.exec(select(User).where(User.email == email)).first()
    if user is None or not user.is_active:
        return None
    return user

async def get_current_user(token: str = Depends(oauth2_scheme), session: Session = Depends(get_session)) -> User:
    user = _user_from_token(token, session)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

async def get_current_user_optional(token: str = Depends(oauth2_scheme_optional), session: Session = Depends(get_session)) -> Optional[User]:
    if not token:
        return None
    return _user_from_token(token, session)

def require_roles(*roles: UserRole):
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user
    return dependency


@router.post("/register")
def register(user_in: UserCreate, service: AuthService = Depends(get_auth_service)):
    user = service.register_user(user_in.username, user_in.email, user_in.password, mobile_number=user_in.mobile_number)
    return serialize_user(user)

@router.post("/token", response_model=Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    service: AuthService = Depends(get_auth_service),
    session: Session = Depends(get_session)
):
    user, error_message = service.authenticate_user(form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    open_cart_session(user, session)
    return {"access_token": service.issue_token(user), "token_type": "bearer"}

@router.post("/logout")
def logout(current_user: User = Depends(get_current_user)):
    # Tokens are discarded client-side; the server drops the cart context
    cart_sessions.close(current_user.id)
    return {"message": "Logged out"}

@router.get("/me")
def read_me(current_user: User = Depends(get_current_user)):
    return serialize_user(current_user)
