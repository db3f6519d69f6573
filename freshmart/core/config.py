from typing import List
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

class TierSetting(BaseModel):
    code: str
    threshold: float
    name: str = "Bulk Discount"

class Settings(BaseSettings):
    PROJECT_NAME: str = "Freshmart API"
    DATABASE_URL: str = "sqlite:///./freshmart.db"
    SECRET_KEY: str = "supersecretkey_change_me_in_production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7 # 1 week
    # Idle cart sessions are dropped after this long; matches the token lifetime
    CART_IDLE_MINUTES: int = 60 * 24 * 7

    # Created on startup when no ADMIN account exists
    ADMIN_USERNAME: str = "admin"
    ADMIN_EMAIL: str = "admin@freshmart.com"
    ADMIN_PASSWORD: str = "change_me_admin"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"]

    # Delivery tiers, applied to the net amount (after bulk discount, before coupons)
    FREE_DELIVERY_ABOVE: float = 3000
    REDUCED_DELIVERY_FROM: float = 1000
    REDUCED_DELIVERY_FEE: float = 25
    STANDARD_DELIVERY_FEE: float = 50

    # Auto-applied tiered coupons, highest threshold first
    TIERED_COUPONS: List[TierSetting] = [
        TierSetting(code="NEPAL100", threshold=8000, name="Nepal Special"),
        TierSetting(code="ABOVE2500", threshold=2500, name="Bulk Discount"),
        TierSetting(code="ABOVE2000", threshold=2000, name="Bulk Discount"),
    ]

    # Allowed drift between client-declared and recomputed money figures
    PRICE_TOLERANCE: float = 0.01

    # SMTP notifications
    MAIL_ENABLED: bool = False
    MAIL_USERNAME: str = Field("orders@freshmart.local", validation_alias="MAIL_USERNAME")
    MAIL_PASSWORD: str = Field("", validation_alias="MAIL_PASSWORD")
    MAIL_FROM: str = Field("orders@freshmart.local", validation_alias="MAIL_FROM")
    MAIL_PORT: int = Field(465, validation_alias="MAIL_PORT")
    MAIL_SERVER: str = Field("localhost", validation_alias="MAIL_SERVER")
    MAIL_SSL: bool = Field(True, validation_alias="MAIL_SSL")
    STAFF_NOTIFY_EMAIL: str = "staff@freshmart.local"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
