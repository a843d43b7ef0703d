"""Vault kubernetes auth role model.

A role binds Vault token policies to Kubernetes service account names in a
set of namespaces, see https://developer.hashicorp.com/vault/api-docs/auth/kubernetes#create-role

Roles are parsed from the raw JSON text found in the roles config map::

    {
      "bound_service_account_names": ["default", "vault-agent-injector"],
      "bound_service_account_namespaces": ["kube-system"],
      "token_policies": ["read-only"],
      "token_ttl": 3600
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple, Union

from vault_auth_kubernetes.errors import ConflictingWildcardError, RoleParseError

WILDCARD = "*"

LIST_FIELDS = (
    "bound_service_account_names",
    "bound_service_account_namespaces",
    "token_policies",
)


def dedupe(values: Iterable[str]) -> List[str]:
    """Remove duplicates, keeping the first occurrence of each value."""
    seen = set()
    out: List[str] = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def collapse_wildcard(values: List[str]) -> List[str]:
    return [WILDCARD] if WILDCARD in values else values


def norm_list(x: Any) -> List[str]:
    if x is None:
        return []
    if isinstance(x, list):
        return [str(v) for v in x]
    if isinstance(x, str):
        return [p.strip() for p in x.split(",") if p.strip()]
    return [str(x)]


def _string_list(raw: Dict[str, Any], key: str) -> List[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RoleParseError(f"{key} must be a list of strings, got {value!r}")
    return value


@dataclass(frozen=True, eq=False)
class Role:
    bound_service_account_names: Tuple[str, ...] = ()
    bound_service_account_namespaces: Tuple[str, ...] = ()
    token_policies: Tuple[str, ...] = ()
    token_ttl: int = 0

    @classmethod
    def from_vault(cls, data: Dict[str, Any]) -> "Role":
        """Build a role from the ``data`` of a Vault role read, as-is."""
        ttl = data.get("token_ttl") or 0
        try:
            ttl = int(ttl)
        except (TypeError, ValueError) as e:
            raise RoleParseError(f"token_ttl must be an integer number of seconds, got {ttl!r}") from e
        return cls(
            bound_service_account_names=tuple(norm_list(data.get("bound_service_account_names"))),
            bound_service_account_namespaces=tuple(norm_list(data.get("bound_service_account_namespaces"))),
            token_policies=tuple(norm_list(data.get("token_policies"))),
            token_ttl=ttl,
        )

    def comparable(self) -> Tuple[Tuple[str, ...], Tuple[str, ...], Tuple[str, ...], int]:
        return (
            tuple(sorted(self.bound_service_account_names)),
            tuple(sorted(self.bound_service_account_namespaces)),
            tuple(sorted(self.token_policies)),
            self.token_ttl,
        )

    def equal(self, other: "Role") -> bool:
        return self.comparable() == other.comparable()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.equal(other)

    def __hash__(self) -> int:
        return hash(self.comparable())

    def to_payload(self) -> Dict[str, Any]:
        """Request body for ``POST auth/<mount>/role/<name>``."""
        return {
            "bound_service_account_names": list(self.bound_service_account_names),
            "bound_service_account_namespaces": list(self.bound_service_account_namespaces),
            "token_policies": list(self.token_policies),
            "token_ttl": self.token_ttl,
        }

    def diff(self, other: "Role") -> List[str]:
        """Human readable field differences, ``self`` being the current value."""
        diffs: List[str] = []
        mine, theirs = self.comparable(), other.comparable()
        for key, cur, exp in zip(LIST_FIELDS + ("token_ttl",), mine, theirs):
            if cur != exp:
                cur_val = list(cur) if isinstance(cur, tuple) else cur
                exp_val = list(exp) if isinstance(exp, tuple) else exp
                diffs.append(f"{key}: {cur_val!r} -> {exp_val!r}")
        return diffs


def equal(a: Role, b: Role) -> bool:
    """Order independent comparison of two roles."""
    return a.equal(b)


def parse_role(raw: Union[bytes, str]) -> Role:
    """Decode, normalize and validate a raw role definition.

    Both bound lists are deduplicated and a list containing the wildcard is
    collapsed to ``["*"]``. Raises :class:`RoleParseError` on malformed input
    and :class:`ConflictingWildcardError` when both lists are the wildcard.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise RoleParseError(f"unmarshal vault role: {e}") from e
    if not isinstance(data, dict):
        raise RoleParseError(f"unmarshal vault role: expected object, got {type(data).__name__}")

    names = collapse_wildcard(dedupe(_string_list(data, "bound_service_account_names")))
    namespaces = collapse_wildcard(dedupe(_string_list(data, "bound_service_account_namespaces")))
    policies = _string_list(data, "token_policies")

    ttl = data.get("token_ttl", 0)
    if ttl is None:
        ttl = 0
    if isinstance(ttl, bool) or not isinstance(ttl, int):
        raise RoleParseError(f"token_ttl must be an integer number of seconds, got {ttl!r}")

    if names == [WILDCARD] and namespaces == [WILDCARD]:
        raise ConflictingWildcardError()

    return Role(
        bound_service_account_names=tuple(names),
        bound_service_account_namespaces=tuple(namespaces),
        token_policies=tuple(policies),
        token_ttl=ttl,
    )
