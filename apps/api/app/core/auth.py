from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    role: str

    @property
    def user_id(self) -> int | None:
        try:
            return int(self.sub)
        except ValueError:
            return None


ANONYMOUS = AuthUser(sub="anonymous", role="guest")


def create_access_token(user_id: int, role: str, expires_minutes: int = 60) -> str:
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    subject = str(payload.get("sub", "anonymous"))
    role = payload.get("role", "sales")
    request.state.user_id = subject
    return AuthUser(sub=subject, role=str(role))
