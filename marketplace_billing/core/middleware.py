from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from marketplace_billing.core.config import settings
from marketplace_billing.core.database import get_db
from marketplace_billing.core.firebase import verify_firebase_token, is_admin_claim
from marketplace_billing.models.account import Account
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


@dataclass(frozen=True)
class ActorContext:
    """Verified identity of whoever is calling. Never built from client-supplied flags."""
    uid: str
    email: Optional[str]
    is_admin: bool = False
    email_verified: bool = False


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency to get current authenticated user from Firebase token.
    Protects routes that require authentication.
    """
    logger.info("get_current_user: Entry")

    try:
        token = credentials.credentials
        decoded_token = verify_firebase_token(token)
        user_id = decoded_token.get('uid')

        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials"
            )

        logger.info(f"get_current_user: Success - {user_id}")
        return {
            'uid': user_id,
            'email': decoded_token.get('email'),
            'token': decoded_token
        }
    except Exception as e:
        logger.error(f"get_current_user: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    admins = {e.lower() for e in settings.admin_emails}
    return email.lower() in admins


def build_actor(decoded_token: dict, account: Optional[Account]) -> ActorContext:
    """Combine the verified token with the stored account into an ActorContext"""
    email = decoded_token.get('email')
    is_admin = (
        is_admin_claim(decoded_token)
        or bool(account is not None and account.is_admin)
        or is_admin_email(email)
    )
    email_verified = bool(decoded_token.get('email_verified', False)) or bool(
        account is not None and account.email_verified
    )
    return ActorContext(
        uid=decoded_token.get('uid'),
        email=email,
        is_admin=is_admin,
        email_verified=email_verified,
    )


async def get_current_actor(
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ActorContext:
    """Dependency resolving the authenticated caller into an ActorContext"""
    account = db.query(Account).filter(Account.id == current_user['uid']).first()
    return build_actor(current_user['token'], account)


async def require_admin(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
    if not actor.is_admin:
        logger.warning(f"require_admin: Failure - {actor.uid} is not an admin")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "FORBIDDEN", "message": "Admin privileges required"},
        )
    return actor
