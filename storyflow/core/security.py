from collections.abc import Iterator
from contextlib import contextmanager
import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from storyflow.core.auth import Principal, PrincipalType
from storyflow.core.config import Settings, get_settings
from storyflow.services.base import MachineCredentialRecord
from storyflow.services.repository import RepositoryUnavailableError, get_repository

# Topic owners sign in as plain users; the admin role unlocks cross-topic operations.
ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"topics:manage"},
    "admin": {"topics:manage", "admin:write"},
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _unavailable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


async def get_machine_principal(
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    """Authenticate a scraper or worker module by its hashed API key."""
    if not x_api_key or not x_module_id:
        raise _unauthorized("module auth requires X-Module-Id and X-API-Key headers")

    try:
        credentials = await repository.get_machine_credentials(x_module_id)
    except RepositoryUnavailableError as exc:
        raise _unavailable(str(exc)) from exc

    record = _match_credential(credentials, x_api_key)
    if record is None:
        raise _unauthorized("invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=record.module_id,
        scopes=set(record.scopes),
        actor_id=record.module_db_id,
    )


def _match_credential(credentials: list[MachineCredentialRecord], api_key: str) -> MachineCredentialRecord | None:
    presented = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    for record in credentials:
        if hmac.compare_digest(record.key_hash, presented):
            return record
    return None


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    """Authenticate a topic owner or administrator through Supabase."""
    token = _bearer_token(authorization)

    if not (settings.supabase_url and settings.supabase_anon_key):
        raise _unavailable("Supabase auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise _unauthorized("invalid bearer token")

    role = _resolve_human_role(user)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=user_id,
    )


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise _unauthorized("human auth requires bearer token")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


@contextmanager
def _forbidden_on_permission_error() -> Iterator[None]:
    try:
        yield
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def require_scopes_or_403(principal: Principal, scopes: set[str]) -> None:
    with _forbidden_on_permission_error():
        principal.require_scopes(scopes)


def require_topic_manager_or_403(principal: Principal, owner_id: str | None) -> None:
    with _forbidden_on_permission_error():
        principal.require_topic_manager(owner_id)


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(base_url=supabase_url.rstrip("/"), timeout=timeout_seconds) as client:
            response = await client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise _unavailable("Supabase auth verification unavailable") from exc

    if response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}:
        raise _unauthorized("invalid bearer token")
    if response.status_code != status.HTTP_200_OK:
        raise _unavailable(f"Supabase auth verification failed status={response.status_code}")
    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    # Only app_metadata is trusted; user_metadata is editable by the user.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    role = app_metadata.get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role
    roles = app_metadata.get("roles")
    if isinstance(roles, list) and "admin" in roles:
        return "admin"
    return "user"
