from fastapi import Depends, Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, account_id_from_claims
from models import Plan
from services.billing_context import BillingContext, get_billing_context
from services.feature_entitlement import resolve
from services.plan_registry import PLAN_DISPLAY, feature_granted, minimum_plan_for_feature, plan_meets_minimum

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> str:
    """Require valid authentication. Returns the caller's account id."""
    user = await get_current_user(request)
    account_id = account_id_from_claims(user) if user else None
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return account_id

def require_feature(feature_name: str):
    """Dependency factory: 403 unless the caller's plan grants feature_name.

    Usage: @router.get("/analytics", dependencies=[Depends(require_feature("advancedAnalytics"))])
    """
    async def _check(
        account_id: str = Depends(require_auth),
        billing: BillingContext = Depends(get_billing_context),
    ) -> str:
        snapshot = resolve(await billing.subscriptions.get(account_id))
        if not feature_granted(snapshot.features, feature_name):
            logger.info(f"Feature {feature_name} denied for {account_id} (plan={snapshot.plan.value})")
            required = minimum_plan_for_feature(feature_name)
            if required is None:
                message = "This feature is not available on any plan."
            else:
                message = (
                    f"This feature requires a {PLAN_DISPLAY[required]['name']} subscription. "
                    "Upgrade to unlock this feature."
                )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "message": message,
                    "requiresUpgrade": required is not None,
                    "feature": feature_name,
                    "requiredPlan": required.value if required else None,
                },
            )
        return account_id
    return _check

def require_plan(minimum_plan: Plan):
    """Dependency factory: 403 unless the caller has an active minimum_plan or higher."""
    async def _check(
        account_id: str = Depends(require_auth),
        billing: BillingContext = Depends(get_billing_context),
    ) -> str:
        snapshot = resolve(await billing.subscriptions.get(account_id))
        if not snapshot.active or not plan_meets_minimum(snapshot.plan, minimum_plan):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "message": f"This feature requires a {minimum_plan.value} subscription or higher.",
                    "requiresUpgrade": True,
                    "currentPlan": snapshot.plan.value,
                    "requiredPlan": minimum_plan.value,
                },
            )
        return account_id
    return _check
