import logging
from datetime import timedelta
from typing import List, Optional
from fastapi import HTTPException, status
from sqlalchemy import func
from sqlmodel import Session, select, or_

from freshmart.core.security import create_access_token, get_password_hash, verify_password
from freshmart.models.user import User, UserRole

logger = logging.getLogger(__name__)

class AuthService:
    def __init__(self, session: Session):
        self.session = session

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.session.exec(select(User).where(func.lower(User.email) == email.strip().lower())).first()

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.session.exec(select(User).where(func.lower(User.username) == username.strip().lower())).first()

    def register_user(self, username: str, email: str, password: str,
                      mobile_number: Optional[str] = None, role: UserRole = UserRole.USER) -> User:
        existing = self.session.exec(
            select(User).where(or_(
                func.lower(User.email) == email.strip().lower(),
                func.lower(User.username) == username.strip().lower(),
            ))
        ).first()
        if existing:
            raise HTTPException(status_code=400, detail="Username or email already registered")

        user = User(
            username=username.strip(),
            email=email.strip().lower(),
            password_hash=get_password_hash(password),
            mobile_number=mobile_number,
            role=role,
            is_active=True,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info("Registered %s user %s", role.value, user.username)
        return user

    def authenticate_user(self, login: str, password: str) -> tuple[Optional[User], Optional[str]]:
        """``login`` may be an email address or a username."""
        user = self.get_user_by_email(login) if "@" in login else self.get_user_by_username(login)
        if not user:
            return None, "User not found. Please check your details or register a new account."
        if not user.is_active:
            return None, "This account has been deactivated."
        if not verify_password(password, user.password_hash):
            return None, "Incorrect password. Please try again."
        return user, None

    def issue_token(self, user: User, expires_delta: Optional[timedelta] = None) -> str:
        return create_access_token(
            data={"sub": user.email, "username": user.username, "role": user.role.value},
            expires_delta=expires_delta,
        )

    def ensure_admin(self, username: str, email: str, password: str) -> Optional[User]:
        """Create the default ADMIN account unless one already exists."""
        if self.session.exec(select(User).where(User.role == UserRole.ADMIN)).first():
            return None
        return self.register_user(username, email, password, role=UserRole.ADMIN)

    # Staff management

    def list_staff(self) -> List[User]:
        return self.session.exec(
            select(User).where(User.role.in_([UserRole.ADMIN, UserRole.STAFF])).order_by(User.created_at)
        ).all()

    def delete_staff(self, user_id: int) -> None:
        user = self.session.get(User, user_id)
        if not user or user.role != UserRole.STAFF:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Staff member not found")
        self.session.delete(user)
        self.session.commit()
        logger.info("Removed staff member %s", user.username)
