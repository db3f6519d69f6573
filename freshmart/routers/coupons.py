from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from freshmart.db.session import get_session
from freshmart.models.user import User
from freshmart.routers.auth import get_current_user, get_current_user_optional
from freshmart.services.coupon import CouponService

router = APIRouter()

class CouponValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    order_total: float = Field(alias="orderTotal", ge=0)

def get_coupon_service(session: Session = Depends(get_session)) -> CouponService:
    return CouponService(session)

@router.get("/")
def list_coupons(
    current_user: Optional[User] = Depends(get_current_user_optional),
    service: CouponService = Depends(get_coupon_service),
) -> List[dict]:
    """Active coupons; gift coupons only show up for the user they target."""
    username = current_user.username if current_user else None
    return [c.to_dict() for c in service.list_visible(username)]

@router.post("/validate")
def validate_coupon(
    request: CouponValidateRequest,
    current_user: User = Depends(get_current_user),
    service: CouponService = Depends(get_coupon_service),
):
    return service.validate(request.code, request.order_total, current_user).to_dict()
