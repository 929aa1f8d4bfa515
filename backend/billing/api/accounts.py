"""Account and referral routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.core.security import require_service_token
from billing.db.session import get_db
from billing.schemas.accounts import CreateAccountRequest
from billing.schemas.subscriptions import RedeemPointsRequest
from billing.services.referral_service import get_referral_stats, redeem_points_for_subscription
from billing.services.subscription_service import create_account, get_subscription_info

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(require_service_token)])


@router.post("")
def create_account_route(account_request: CreateAccountRequest, db: Session = Depends(get_db)):
    """Create (or fetch) an account; new accounts start on the free tier"""
    account = create_account(
        account_request.external_ref,
        db,
        email=account_request.email,
        referred_by_account_id=account_request.referred_by_account_id
    )
    return {
        "id": account.id,
        "external_ref": account.external_ref,
        "email": account.email,
        "points_balance": account.points_balance,
        "subscription": get_subscription_info(account.id, db),
    }


@router.get("/{account_id}/referrals")
def get_referrals(account_id: int, db: Session = Depends(get_db)):
    return get_referral_stats(account_id, db)


@router.post("/{account_id}/redeem")
def redeem_points(account_id: int, redeem_request: RedeemPointsRequest, db: Session = Depends(get_db)):
    """Spend referral points on a one-month subscription"""
    return redeem_points_for_subscription(account_id, redeem_request.tier, db)
