from __future__ import annotations

import logging
from typing import Dict, Mapping, Set

from vault_auth_kubernetes.errors import RoleError
from vault_auth_kubernetes.role import Role, parse_role

logger = logging.getLogger(__name__)


def load_roles(config_data: Mapping[str, str], source: str = "config map") -> Dict[str, Role]:
    """Parse every entry of the roles config source into a role set.

    Entries that fail to parse are logged and left out.
    """
    roles: Dict[str, Role] = {}
    for name, raw in (config_data or {}).items():
        try:
            roles[name] = parse_role(raw)
        except RoleError as e:
            logger.error("new vault role %s from %s: %s", name, source, e)
    return roles


def service_accounts_by_namespace(roles: Mapping[str, Role]) -> Dict[str, Set[str]]:
    """Fold the bound names of every role across its bound namespaces.

    The wildcard namespace is kept as its own ``"*"`` key.
    """
    required: Dict[str, Set[str]] = {}
    for role in roles.values():
        for namespace in role.bound_service_account_namespaces:
            required.setdefault(namespace, set()).update(role.bound_service_account_names)
    return required
