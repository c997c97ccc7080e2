from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from app.core.background import BestEffortDispatcher
from app.deps import get_current_user, get_dispatcher
from app.models.user import UserAccount
from app.services import accounts as accounts_service

router = APIRouter()


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=accounts_service.MIN_PASSWORD_LENGTH)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str = Field(min_length=accounts_service.MIN_PASSWORD_LENGTH)


@router.post("/signup")
async def auth_signup(body: SignupRequest, dispatcher: BestEffortDispatcher = Depends(get_dispatcher)):
    """Create an account; a verification link is emailed in the background."""
    user = await accounts_service.signup(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        dispatcher=dispatcher,
    )
    return {"user": accounts_service.account_view(user)}


@router.post("/login")
async def auth_login(body: LoginRequest):
    """Exchange email/password for a bearer token."""
    _, token = await accounts_service.login(body.email, body.password)
    return {"token": token, "token_type": "bearer"}


@router.get("/verify-account/{token}")
async def auth_verify_account(token: str):
    await accounts_service.verify_account(token)
    return {"message": "Account is successfully verified"}


@router.get("/account")
async def auth_account(user: UserAccount = Depends(get_current_user)):
    """Return current user. Requires bearer token."""
    return {"user": accounts_service.account_view(user)}


@router.put("/account/password")
async def auth_change_password(body: ChangePasswordRequest, user: UserAccount = Depends(get_current_user)):
    """Change password; tokens issued before stop working."""
    await accounts_service.change_password(user, body.old_password, body.new_password)
    return {"message": "Password changed successfully"}
