"""Account signup, login, email verification and password changes."""

import uuid
from datetime import datetime, timedelta

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.background import BestEffortDispatcher
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, UnauthorizedError
from app.core.logging import get_logger
from app.core.security import create_access_token, hash_password, verify_password
from app.ledger.collaborators import UserDirectory
from app.models.user import UserAccount
from app.models.verification_token import VerificationToken
from app.services.email import send_verification_email

log = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def _object_id(user_id: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(user_id)
    except (InvalidId, TypeError):
        return None


async def get_user(user_id: str) -> UserAccount | None:
    oid = _object_id(user_id)
    if oid is None:
        return None
    return await UserAccount.get(oid)


class AccountDirectory(UserDirectory):
    """Identity lookups for the ledger."""

    async def exists(self, user_id: str) -> bool:
        return await get_user(user_id) is not None


async def signup(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    dispatcher: BestEffortDispatcher | None = None,
) -> UserAccount:
    """Create the account and send the verification link in the background."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    email = email.strip().lower()
    if await UserAccount.find_one(UserAccount.email == email):
        raise ConflictError("Email already registered")
    user = UserAccount(
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
    )
    try:
        await user.insert()
    except DuplicateKeyError as e:
        raise ConflictError("Email already registered") from e

    ttl = timedelta(minutes=get_settings().verification_token_ttl_minutes)
    token = VerificationToken(
        token=str(uuid.uuid4()),
        user_id=str(user.id),
        expires_at=datetime.utcnow() + ttl,
    )
    await token.insert()
    log.info("user_created", user_id=str(user.id))
    await log_event(str(user.id), "user_created", "user", str(user.id), {"email": user.email})

    # Delivery failures are retried by the worker; signup does not wait for them.
    (dispatcher or BestEffortDispatcher()).dispatch(
        "verification_email", deliver_verification_email, user.email, token.token
    )
    return user


async def deliver_verification_email(email: str, token: str) -> None:
    await send_verification_email(email, token)
    await VerificationToken.find_one(VerificationToken.token == token).update(
        {"$set": {"email_delivered": True}}
    )
    log.info("verification_email_delivered", token_prefix=token[:8])


async def login(email: str, password: str) -> tuple[UserAccount, str]:
    user = await UserAccount.find_one(UserAccount.email == email.strip().lower())
    if not user or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid email or password")
    user.last_login_at = datetime.utcnow()
    await user.save()
    token = create_access_token(session_payload_for_user(user))
    log.info("user_login", user_id=str(user.id))
    return user, token


async def verify_account(token: str) -> UserAccount:
    record = await VerificationToken.find_one(VerificationToken.token == token)
    if record is None or record.expires_at < datetime.utcnow():
        raise BadRequestError("Token does not exist")
    user = await get_user(record.user_id)
    if user is None:
        raise BadRequestError("User does not exist")
    if user.verified:
        raise BadRequestError("User already verified")
    user.verified = True
    user.updated_at = datetime.utcnow()
    await user.save()
    await record.delete()
    log.info("user_verified", user_id=str(user.id))
    return user


async def change_password(user: UserAccount, old_password: str, new_password: str) -> None:
    """Replace the password and invalidate every token issued before."""
    if not verify_password(old_password, user.password_hash):
        raise BadRequestError("Incorrect old password")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    user.password_hash = hash_password(new_password)
    user.session_version += 1
    user.updated_at = datetime.utcnow()
    await user.save()
    await log_event(str(user.id), "password_changed", "user", str(user.id))


def session_payload_for_user(user: UserAccount) -> dict:
    return {"user_id": str(user.id), "session_version": user.session_version}


def account_view(user: UserAccount) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "verified": user.verified,
        "created_at": user.created_at.isoformat(),
    }
