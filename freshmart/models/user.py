from typing import Optional
from datetime import datetime
from enum import Enum
from sqlmodel import Field, SQLModel

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    USER = "USER"

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    # Basic Info
    username: str = Field(unique=True, index=True)
    email: str = Field(unique=True, index=True)
    mobile_number: Optional[str] = Field(default=None, index=True)
    password_hash: str = Field(default="")

    # Account Status
    role: UserRole = Field(default=UserRole.USER)
    is_active: bool = Field(default=True)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.STAFF)
