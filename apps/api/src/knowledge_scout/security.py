"""Bearer-token identity verification."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from jose import JWTError, jwt

from knowledge_scout.errors import Unauthorized

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> Identity: ...


def _roles_from_claims(claims: dict[str, Any]) -> frozenset[str]:
    roles: set[str] = set()

    role = claims.get("role")
    if isinstance(role, str) and role.strip():
        roles.add(role.strip().lower())

    listed = claims.get("roles")
    if isinstance(listed, list):
        roles.update(item.strip().lower() for item in listed if isinstance(item, str) and item.strip())

    for container in ("metadata", "public_metadata"):
        nested = claims.get(container)
        if isinstance(nested, dict):
            nested_role = nested.get("role")
            if isinstance(nested_role, str) and nested_role.strip():
                roles.add(nested_role.strip().lower())

    return frozenset(roles)


class JwtIdentityVerifier:
    def __init__(self, secret: str, *, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            raise Unauthorized("invalid bearer token") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise Unauthorized("bearer token has no subject")

        return Identity(user_id=subject.strip(), roles=_roles_from_claims(claims))

    def issue(
        self,
        subject: str,
        *,
        claims: dict[str, Any] | None = None,
        expires_in: timedelta = timedelta(hours=1),
    ) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {"sub": subject, "iat": now, "exp": now + expires_in}
        if claims:
            payload.update(claims)
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)
