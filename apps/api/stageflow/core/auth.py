from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from stageflow.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _bearer_token(connection: HTTPConnection) -> str:
    auth_header = connection.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.replace("Bearer ", "")
    # Browsers cannot set headers on a websocket handshake.
    return connection.query_params.get("access_token", "")


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def issue_token(subject: str, roles: list[str]) -> str:
    settings = get_settings()
    return jwt.encode({"sub": subject, "roles": roles}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(connection: HTTPConnection) -> AuthUser:
    token = _bearer_token(connection)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])
    return decode_token(token)
