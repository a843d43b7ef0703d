"""Vault HTTP client for the kubernetes auth backend.

Requests go out through an ``hvac`` raw adapter, which builds the URL and
attaches the current approle token. Every call goes through
:meth:`VaultClient.request`, which retries on transport failures and runs a
chain of error handlers on non-2xx responses. Handlers can turn a response
into a success (404 on read/list/delete) or renew the token on
``permission denied`` so the next attempt succeeds.

The retry budget is shared: a token renewal triggered by a handler consumes
attempts from the same budget as the request that triggered it, so budgets
of 2 or more are needed for a renewal to be useful.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests
from hvac.adapters import RawAdapter

from vault_auth_kubernetes.errors import (
    LoginError,
    ResponseError,
    RetriesExceededError,
    UnexpectedMountTypeError,
    VaultError,
)
from vault_auth_kubernetes.role import Role

logger = logging.getLogger(__name__)

VAULT_API_VERSION = "v1"
KUBERNETES_MOUNT_TYPE = "kubernetes"
HTTP_NUMBER_OF_RETRIES = 3
HTTP_TIMEOUT_SECONDS = 10
MOUNT_MAX_LEASE_TTL = "8760h"

# Returns True when the response should be treated as a success.
ErrorHandler = Callable[["VaultClient", ResponseError, int], bool]


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def expected_not_found_handler(client: "VaultClient", response_error: ResponseError, retries: int) -> bool:
    """404 means absent: empty role list, missing role, nothing to delete."""
    return response_error.status == 404


def permission_denied_handler(client: "VaultClient", response_error: ResponseError, retries: int) -> bool:
    """Renew the token on ``permission denied`` so the next attempt can use it.

    The login gets the budget left after the failed attempt. A failed login
    aborts the request.
    """
    if response_error.contains("permission denied"):
        logger.warning("permission denied: re-generating token")
        client.login(retries - 1)
    return False


AUTHENTICATED = (permission_denied_handler,)
AUTHENTICATED_OR_ABSENT = (permission_denied_handler, expected_not_found_handler)


def _to_text(value: Union[bytes, str, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class VaultClient:
    """Approle-authenticated client scoped to one kubernetes auth mount."""

    def __init__(
        self,
        host: str,
        role_id: str,
        secret_id: str,
        mount: str,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        verify: bool = True,
        retries: int = HTTP_NUMBER_OF_RETRIES,
    ):
        self.host = host.strip().rstrip("/")
        self.role_id = role_id
        self.secret_id = secret_id
        self.mount = mount.strip("/")
        self.timeout = timeout
        self.retries = retries
        self._adapter = RawAdapter(
            base_uri=self.host,
            verify=verify,
            timeout=timeout,
            session=session,
        )

    @property
    def token(self) -> Optional[str]:
        return self._adapter.token

    @token.setter
    def token(self, value: Optional[str]) -> None:
        self._adapter.token = value

    # -- transport -----------------------------------------------------------

    def _send(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> requests.Response:
        # Vault answers 400 when the path ends with '/'; non-2xx responses
        # go to the error handlers instead of raising
        return self._adapter.request(
            method,
            f"/{VAULT_API_VERSION}/{path.strip('/')}",
            json=body,
            raise_exception=False,
        )

    @staticmethod
    def _decode(response: requests.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected json response: {type(data).__name__}")
        return data

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        error_handlers: Sequence[ErrorHandler] = (),
        retries: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Execute one Vault API call within a bounded retry budget.

        Returns the decoded JSON body on a 2xx response, or ``None`` when an
        error handler declared the response a success. Raises
        :class:`RetriesExceededError` once the budget is spent.
        """
        remaining = self.retries if retries is None else retries
        last_error: Optional[Exception] = None

        while remaining > 0:
            try:
                response = self._send(method, path, body)
                if 200 <= response.status_code < 300:
                    return self._decode(response)
                payload = self._decode(response)
            except (requests.RequestException, ValueError) as e:
                logger.warning("%s %s: %s: remaining retries %d", method, path, e, remaining)
                last_error = e
                remaining -= 1
                continue

            errors = payload.get("errors") or []
            response_error = ResponseError(response.status_code, [str(e) for e in errors])
            for handler in error_handlers:
                if handler(self, response_error, remaining):
                    return None

            logger.warning(
                "%s %s: response errors: %s: remaining retries %d",
                method, path, response_error, remaining,
            )
            last_error = VaultError(f"{method} {path}: {response_error}")
            remaining -= 1

        if last_error is not None:
            raise RetriesExceededError(f"{method} {path}: number of retries exceeded") from last_error
        raise RetriesExceededError(f"{method} {path}: number of retries exceeded")

    # -- authentication ------------------------------------------------------

    def login(self, retries: Optional[int] = None) -> None:
        """Approle login; stores the returned client token on success."""
        body = {"role_id": self.role_id, "secret_id": self.secret_id}
        try:
            response = self.request("POST", "auth/approle/login", body, retries=retries)
        except RetriesExceededError as e:
            raise LoginError(f"app role login: {e}") from e

        auth = (response or {}).get("auth") or {}
        token = auth.get("client_token")
        if not token:
            raise LoginError("app role login: response does not contain auth.client_token")

        logger.info(
            "app role login: renewable %s, lease duration %s, token policies %s",
            auth.get("renewable"), auth.get("lease_duration"), auth.get("token_policies"),
        )
        self.token = token

    # -- roles ---------------------------------------------------------------

    def role_path(self, name: str = "") -> str:
        path = f"auth/{self.mount}/role"
        return f"{path}/{name}" if name else path

    def read_role(self, name: str) -> Optional[Role]:
        """Return the role stored in Vault, or None if there is no such role."""
        response = self.request("GET", self.role_path(name), error_handlers=AUTHENTICATED_OR_ABSENT)
        if not response or not response.get("data"):
            return None
        return Role.from_vault(response["data"])

    def list_roles(self) -> List[str]:
        # Vault answers 404 when the mount has no roles yet
        response = self.request("LIST", self.role_path(), error_handlers=AUTHENTICATED_OR_ABSENT)
        if not response:
            return []
        return list((response.get("data") or {}).get("keys") or [])

    def create_role(self, name: str, role: Role) -> bool:
        """Write the role unless Vault already holds an equal one.

        Returns True when a write was issued.
        """
        existing = self.read_role(name)
        if existing is not None:
            if existing.equal(role):
                logger.debug("role %s unchanged", name)
                return False
            logger.info("role %s has changed: %s", name, "; ".join(existing.diff(role)))

        path = self.role_path(name)
        logger.info("creating role: POST %s %s", path, role.to_payload())
        self.request("POST", path, role.to_payload(), error_handlers=AUTHENTICATED)
        return True

    def delete_role(self, name: str) -> bool:
        """Delete the role if it exists.

        Returns True when Vault deleted it; a role that vanished between the
        read and the delete (404) counts as not deleted.
        """
        if self.read_role(name) is None:
            return False

        path = self.role_path(name)
        logger.info("deleting role: DELETE %s", path)
        return self.request("DELETE", path, error_handlers=AUTHENTICATED_OR_ABSENT) is not None

    # -- auth backend --------------------------------------------------------

    def is_mounted(self) -> bool:
        """Check ``sys/auth`` for this mount; a mount of another type is an error."""
        logger.debug("checking if auth kubernetes is mounted: GET sys/auth")
        response = self.request("GET", "sys/auth", error_handlers=AUTHENTICATED) or {}

        mounts = response.get("data")
        if not isinstance(mounts, dict):
            mounts = response

        for key, info in mounts.items():
            if not isinstance(info, dict) or key.strip("/") != self.mount:
                continue
            mount_type = info.get("type")
            if mount_type != KUBERNETES_MOUNT_TYPE:
                raise UnexpectedMountTypeError(key, mount_type)
            return True
        return False

    def mount_auth(self) -> None:
        path = f"sys/auth/{self.mount}"
        body = {
            "type": KUBERNETES_MOUNT_TYPE,
            "description": "Kubernetes auth backend managed by vault-auth-kubernetes",
            "config": {"max_lease_ttl": MOUNT_MAX_LEASE_TTL},
        }
        logger.info("mounting auth kubernetes: POST %s", path)
        self.request("POST", path, body, error_handlers=AUTHENTICATED)

    def configure_auth(
        self,
        kubernetes_host: str,
        kubernetes_ca_cert: Union[bytes, str],
        token_reviewer_jwt: Union[bytes, str],
    ) -> None:
        path = f"auth/{self.mount}/config"
        body = {
            "kubernetes_host": kubernetes_host,
            "kubernetes_ca_cert": _to_text(kubernetes_ca_cert),
            "token_reviewer_jwt": _to_text(token_reviewer_jwt),
        }
        logger.info("configuring auth kubernetes: POST %s (kubernetes host %s)", path, kubernetes_host)
        self.request("POST", path, body, error_handlers=AUTHENTICATED)

    def init_auth(
        self,
        kubernetes_host: str,
        kubernetes_ca_cert: Union[bytes, str],
        token_reviewer_jwt: Union[bytes, str],
    ) -> bool:
        """Mount and configure the backend unless it is already mounted.

        Returns True when the backend was mounted by this call.
        """
        logger.info("initialising %s kubernetes auth", self.mount)
        if self.is_mounted():
            logger.info("kubernetes auth is already mounted")
            return False

        self.mount_auth()
        self.configure_auth(kubernetes_host, kubernetes_ca_cert, token_reviewer_jwt)
        return True

    def delete_auth(self) -> bool:
        """Unmount the backend if mounted. Returns True when it was unmounted."""
        if not self.is_mounted():
            logger.info("kubernetes auth is not mounted")
            return False

        path = f"sys/auth/{self.mount}"
        logger.info("deleting auth kubernetes: DELETE %s", path)
        return self.request("DELETE", path, error_handlers=AUTHENTICATED_OR_ABSENT) is not None
