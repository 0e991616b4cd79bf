from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlmodel import select

from db import SessionDep
from models import User
from schemas import LoginData, UserCreate, UserRead

router = APIRouter(tags=["auth"])

SESSION_COOKIE = "session"

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_serializer(request: Request) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(request.app.state.settings.secret_key)


def create_session_token(serializer: URLSafeTimedSerializer, user_id: int) -> str:
    """
    Store user_id in the signed token.
    Example data:
        {"user_id": 3}
    """
    return serializer.dumps({"user_id": user_id})


def verify_session_token(
    serializer: URLSafeTimedSerializer, token: str, max_age_seconds: int
) -> Optional[dict]:
    """
    Returns {'user_id': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadSignature:
        return None


def _set_session_cookie(request: Request, response: Response, user: User) -> None:
    settings = request.app.state.settings
    response.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_token(get_serializer(request), user.id),
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=settings.session_max_age,
    )


def get_optional_user(
    request: Request,
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Optional[User]:
    """
    Reads the 'session' cookie, verifies the token and looks up the user.
    Returns None if not logged in / invalid.
    """
    if session_token is None:
        return None

    data = verify_session_token(
        get_serializer(request),
        session_token,
        request.app.state.settings.session_max_age,
    )
    if not data:
        return None

    return session.get(User, data["user_id"])


OptionalUserDep = Annotated[Optional[User], Depends(get_optional_user)]


def get_current_user(user: OptionalUserDep) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def require_admin(user: CurrentUserDep) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


AdminDep = Annotated[User, Depends(require_admin)]


@router.post("/register", response_model=UserRead, status_code=201)
def register(user_in: UserCreate, request: Request, response: Response, session: SessionDep):
    """
    Register a new user with a hashed password and log them in.
    Emails listed in ADMIN_EMAILS become admins.
    """
    email = str(user_in.email).lower()
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=email,
        name=user_in.name,
        password_hash=hash_password(user_in.password),
        is_admin=request.app.state.settings.is_admin_email(email),
    )
    session.add(user)
    session.commit()
    session.refresh(user)

    _set_session_cookie(request, response, user)
    return user


@router.post("/login")
def login(payload: LoginData, request: Request, response: Response, session: SessionDep):
    """
    Log in with email + password, set a signed cookie.
    """
    user = session.exec(
        select(User).where(User.email == str(payload.email).lower())
    ).first()

    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid email or password")

    _set_session_cookie(request, response, user)
    return {"message": "Login successful", "is_admin": user.is_admin}


@router.post("/logout")
def logout(response: Response):
    """
    Clear the session cookie.
    """
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserRead)
def read_me(current: CurrentUserDep):
    """
    Get info about the currently logged-in user.
    """
    return current
