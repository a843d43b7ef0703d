"""Exceptions raised by vault-auth-kubernetes."""
from __future__ import annotations

from typing import List, Optional


class VaultAuthKubernetesError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Role definitions
# ---------------------------------------------------------------------------

class RoleError(VaultAuthKubernetesError):
    pass


class RoleParseError(RoleError):
    """Raw role definition could not be decoded into a role."""


class ConflictingWildcardError(RoleError):
    """Both bound names and bound namespaces reduced to the wildcard."""

    def __init__(self) -> None:
        super().__init__(
            "vault role cannot contain * in both bound service account namespaces and names"
        )


# ---------------------------------------------------------------------------
# Retry budgets
# ---------------------------------------------------------------------------

class RetriesExceededError(VaultAuthKubernetesError):
    def __init__(self, message: str = "number of retries exceeded") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class VaultError(VaultAuthKubernetesError):
    pass


class LoginError(VaultError):
    pass


class UnexpectedMountTypeError(VaultError):
    def __init__(self, mount: str, mount_type: Optional[str]) -> None:
        super().__init__(f"found {mount} auth backend but with incorrect type {mount_type}")
        self.mount = mount
        self.mount_type = mount_type


class ResponseError:
    """Parsed body of a non-2xx Vault response: status code plus ``errors``."""

    def __init__(self, status: int, errors: Optional[List[str]] = None):
        self.status = status
        self.errors = list(errors or [])

    def contains(self, message: str) -> bool:
        return message in self.errors

    def __str__(self) -> str:
        errs = ", ".join(self.errors).replace("\t", "").replace("\n", "")
        return f"{self.status} {errs!r}"

    def __repr__(self) -> str:
        return f"ResponseError(status={self.status}, errors={self.errors!r})"


# ---------------------------------------------------------------------------
# Kubernetes
# ---------------------------------------------------------------------------

class KubernetesError(VaultAuthKubernetesError):
    pass


class BootstrapError(VaultAuthKubernetesError):
    """A token reviewer bootstrap step failed; the process cannot start."""
