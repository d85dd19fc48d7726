"""
Keycloak credential store (Admin REST API) for account provisioning.

Why:
    Deployments that keep login identity in Keycloak instead of Supabase Auth
    need the same `CredentialStore` port: create an auto-confirmed user with a
    password and metadata, mirror identity fields, delete, list and sign in.

Design:
    - Async `httpx.AsyncClient`; tests inject one built on `httpx.MockTransport`.
    - Admin token via OAuth2 client_credentials (confidential client). The
      password grant with admin username/password remains a dev-only fallback
      and is refused in production-like environments.
    - Metadata lives in Keycloak user attributes (`{key: [value]}`).

Security:
    - Never log credentials or tokens.
    - Honors `KEYCLOAK_CA_BUNDLE` for TLS verification when the store builds
      its own client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import logging
import os

import httpx

from backend.storage.ports import CredentialSession, InvalidCredentials, StoreFailure, UniqueViolation

_log = logging.getLogger("eduplatform.identity_access")

STORE = "credentials"


@dataclass(frozen=True)
class KeycloakConfig:
    base_url: str  # internal base URL, e.g., https://keycloak:8443
    realm: str
    client_id: str  # public client used for the direct grant sign-in
    admin_realm: str = "master"
    admin_client_id: str = "eduplatform-admin-cli"
    admin_client_secret: Optional[str] = None
    admin_username: Optional[str] = None
    admin_password: Optional[str] = None
    timeout: float = 10.0

    @property
    def admin_token_endpoint(self) -> str:
        return f"{self.base_url}/realms/{self.admin_realm}/protocol/openid-connect/token"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect/token"

    @property
    def users_endpoint(self) -> str:
        return f"{self.base_url}/admin/realms/{self.realm}/users"


def load_keycloak_config() -> KeycloakConfig:
    return KeycloakConfig(
        base_url=os.getenv("KC_BASE_URL", "http://localhost:8080").rstrip("/"),
        realm=os.getenv("KC_REALM", "eduplatform"),
        client_id=os.getenv("KC_CLIENT_ID", "eduplatform-web"),
        admin_realm=os.getenv("KC_ADMIN_REALM", "master"),
        admin_client_id=os.getenv("KC_ADMIN_CLIENT_ID", "eduplatform-admin-cli"),
        admin_client_secret=os.getenv("KC_ADMIN_CLIENT_SECRET") or None,
        admin_username=os.getenv("KC_ADMIN_USERNAME") or None,
        admin_password=os.getenv("KC_ADMIN_PASSWORD") or None,
    )


def _attributes(metadata: Mapping[str, Any]) -> Dict[str, List[str]]:
    return {str(k): [str(v)] for k, v in metadata.items() if v is not None}


def _metadata(user: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten Keycloak `attributes` ({key: [values...]}) to single values."""
    out: Dict[str, Any] = {}
    for key, vals in (user.get("attributes") or {}).items():
        if isinstance(vals, list) and vals:
            out[key] = vals[0]
    return out


class KeycloakCredentialStore:
    """`CredentialStore` implemented against the Keycloak Admin REST API."""

    name = STORE

    def __init__(self, cfg: KeycloakConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.cfg = cfg
        if client is None:
            ca = os.getenv("KEYCLOAK_CA_BUNDLE")
            client = httpx.AsyncClient(timeout=cfg.timeout, verify=ca if ca else True)
        self._http = client

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- Transport ---------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            _log.warning("keycloak request failed: method=%s err=%s", method, exc.__class__.__name__)
            raise StoreFailure("keycloak_unreachable", store=STORE) from exc

    async def _token(self) -> str:
        """Obtain an admin bearer token.

        Prefers client_credentials with a confidential client. Falls back to the
        password grant only when no client secret is configured, and never in
        production-like environments.
        """
        if self.cfg.admin_client_secret:
            data = {
                "grant_type": "client_credentials",
                "client_id": self.cfg.admin_client_id,
                "client_secret": self.cfg.admin_client_secret,
            }
        else:
            env = (os.getenv("EDU_ENV", "dev") or "").lower()
            if env in {"prod", "production", "stage", "staging"}:
                raise StoreFailure("password_grant_disabled_in_prod", store=STORE)
            if not self.cfg.admin_username or not self.cfg.admin_password:
                raise StoreFailure("keycloak_admin_credentials_missing", store=STORE)
            data = {
                "grant_type": "password",
                "client_id": self.cfg.admin_client_id,
                "username": self.cfg.admin_username,
                "password": self.cfg.admin_password,
            }
        r = await self._request("POST", self.cfg.admin_token_endpoint, data=data)
        if r.status_code != 200:
            raise StoreFailure("admin_token_failed", store=STORE)
        tok = (r.json() or {}).get("access_token")
        if not tok:
            raise StoreFailure("admin_token_missing", store=STORE)
        return str(tok)

    def _admin(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _find_by_email(self, token: str, email: str) -> Optional[Dict[str, Any]]:
        r = await self._request(
            "GET",
            self.cfg.users_endpoint,
            headers=self._admin(token),
            params={"email": email, "exact": "true"},
        )
        if r.status_code != 200:
            raise StoreFailure("user_lookup_failed", store=STORE)
        arr = r.json() or []
        return arr[0] if arr else None

    # --- Port methods ------------------------------------------------------------

    async def create(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> str:
        token = await self._token()
        payload = {
            "username": email,
            "email": email,
            "enabled": True,
            "emailVerified": True,
            "attributes": _attributes(metadata),
            **({"firstName": metadata["full_name"]} if metadata.get("full_name") else {}),
        }
        r = await self._request("POST", self.cfg.users_endpoint, headers=self._admin(token), json=payload)
        if r.status_code == 409:
            raise UniqueViolation("email_exists", store=STORE)
        if r.status_code not in (201, 204):
            raise StoreFailure("user_create_failed", store=STORE)
        user = await self._find_by_email(token, email)
        user_id = (user or {}).get("id")
        if not user_id:
            raise StoreFailure("user_id_missing", store=STORE)
        pw = {"type": "password", "value": password, "temporary": False}
        pr = await self._request(
            "PUT", f"{self.cfg.users_endpoint}/{user_id}/reset-password", headers=self._admin(token), json=pw
        )
        if pr.status_code != 204:
            # A user without a password cannot sign in; remove it before failing.
            await self._request("DELETE", f"{self.cfg.users_endpoint}/{user_id}", headers=self._admin(token))
            raise StoreFailure("password_set_failed", store=STORE)
        return str(user_id)

    async def update_by_id(self, credential_id: str, patch: Mapping[str, Any]) -> None:
        token = await self._token()
        url = f"{self.cfg.users_endpoint}/{credential_id}"
        current = await self._request("GET", url, headers=self._admin(token))
        if current.status_code == 404:
            raise StoreFailure("credential_not_found", store=STORE)
        if current.status_code != 200:
            raise StoreFailure("user_lookup_failed", store=STORE)
        user = current.json() or {}
        body: Dict[str, Any] = {}
        if patch.get("email"):
            body["email"] = patch["email"]
            body["username"] = patch["email"]
        meta = patch.get("metadata")
        if isinstance(meta, Mapping) and meta:
            merged = _metadata(user)
            merged.update(meta)
            body["attributes"] = _attributes(merged)
            if meta.get("full_name"):
                body["firstName"] = meta["full_name"]
        if not body:
            return
        r = await self._request("PUT", url, headers=self._admin(token), json=body)
        if r.status_code == 409:
            raise UniqueViolation("email_exists", store=STORE)
        if r.status_code != 204:
            raise StoreFailure("user_update_failed", store=STORE)

    async def delete_by_id(self, credential_id: str) -> None:
        token = await self._token()
        r = await self._request("DELETE", f"{self.cfg.users_endpoint}/{credential_id}", headers=self._admin(token))
        if r.status_code == 404:
            raise StoreFailure("credential_not_found", store=STORE)
        if r.status_code != 204:
            raise StoreFailure("user_delete_failed", store=STORE)

    async def list(self) -> List[Dict[str, Any]]:
        token = await self._token()
        out: List[Dict[str, Any]] = []
        first = 0
        page = 100
        while True:
            r = await self._request(
                "GET", self.cfg.users_endpoint, headers=self._admin(token), params={"first": first, "max": page}
            )
            if r.status_code != 200:
                raise StoreFailure("user_list_failed", store=STORE)
            arr = r.json() or []
            for u in arr:
                out.append({"id": str(u.get("id")), "email": u.get("email") or "", "metadata": _metadata(u)})
            if len(arr) < page:
                return out
            first += page

    async def sign_in(self, *, email: str, password: str) -> CredentialSession:
        data = {
            "grant_type": "password",
            "client_id": self.cfg.client_id,
            "username": email,
            "password": password,
        }
        r = await self._request("POST", self.cfg.token_endpoint, data=data)
        if r.status_code in (400, 401):
            raise InvalidCredentials("invalid_credentials", store=STORE)
        if r.status_code != 200:
            raise StoreFailure("direct_grant_failed", store=STORE)
        access_token = (r.json() or {}).get("access_token")
        user = await self._find_by_email(await self._token(), email)
        if not user or not user.get("id"):
            raise StoreFailure("user_lookup_failed", store=STORE)
        return CredentialSession(
            credential_id=str(user["id"]),
            email=user.get("email") or email,
            metadata=_metadata(user),
            access_token=access_token,
        )


__all__ = ["KeycloakConfig", "KeycloakCredentialStore", "load_keycloak_config"]
