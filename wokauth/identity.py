"""
Reconcile an external provider identity into a local user + linked account.
Keyed by (provider, provider_user_id); no cross-provider merging.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wokauth.models import PROVIDERS, OAuthAccount, User, new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """Canonical profile shape every provider adapter normalizes into."""
    email: str | None = None
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


def _email_taken(db: Session, email: str, user_id: str | None) -> bool:
    """True if another user already owns this email (users.email is unique)."""
    q = db.query(User.id).filter(User.email == email)
    if user_id is not None:
        q = q.filter(User.id != user_id)
    return q.first() is not None


def _update_existing(db: Session, account: OAuthAccount, profile: ProviderProfile, access_token: str) -> str:
    account.access_token = access_token
    user = account.user

    # Coalesce: a missing incoming value never clears a stored one
    if profile.email is not None and profile.email != user.email:
        if _email_taken(db, profile.email, user.id):
            logger.warning(
                "Email from %s already belongs to another user; keeping current email for user %s",
                account.provider,
                user.id,
            )
        else:
            user.email = profile.email
    if profile.display_name is not None:
        user.display_name = profile.display_name
    if profile.avatar_url is not None:
        user.avatar_url = profile.avatar_url
    user.updated_at = datetime.now(timezone.utc)
    return user.id


def _create_new(
    db: Session,
    provider: str,
    provider_user_id: str,
    profile: ProviderProfile,
    access_token: str,
) -> str:
    email = profile.email
    if email is not None and _email_taken(db, email, None):
        logger.warning("Email from %s already belongs to another user; new user created without email", provider)
        email = None

    user = User(
        id=new_id(),
        email=email,
        username=profile.username,
        display_name=profile.display_name,
        avatar_url=profile.avatar_url,
    )
    db.add(user)
    db.add(
        OAuthAccount(
            user=user,
            provider=provider,
            provider_user_id=provider_user_id,
            access_token=access_token,
        )
    )
    logger.info("Created user %s from %s login", user.id, provider)
    return user.id


def upsert_user(
    db: Session,
    provider: str,
    provider_user_id: str,
    profile: ProviderProfile,
    access_token: str,
) -> str:
    """
    Find the linked account for (provider, provider_user_id) and refresh it, or create
    a new user and linked account. Returns the local user id.

    Both writes commit together; on a storage error the transaction is rolled back and
    the error propagates.
    """
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider: {provider}")
    if not provider_user_id:
        raise ValueError("provider_user_id is required")

    try:
        account = (
            db.query(OAuthAccount)
            .filter(
                OAuthAccount.provider == provider,
                OAuthAccount.provider_user_id == provider_user_id,
            )
            .first()
        )
        if account is not None:
            user_id = _update_existing(db, account, profile, access_token)
        else:
            user_id = _create_new(db, provider, provider_user_id, profile, access_token)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("User upsert failed for %s identity", provider)
        raise
    return user_id
