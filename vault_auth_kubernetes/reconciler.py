"""Reconcile Vault kubernetes auth roles and cluster service accounts.

Desired state is the roles config map. Each pass:

1. parses the roles (invalid entries are logged and skipped),
2. folds them into the service accounts required per namespace,
3. deletes managed service accounts that are no longer required, then
   creates the missing ones,
4. deletes Vault roles that are no longer configured, then creates or
   updates the configured ones.

A failure on a single service account or role is logged and the pass goes on
with the rest. Passes never overlap: the next one starts ``interval`` seconds
after the previous one finished.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional, Protocol, Set, Union

from vault_auth_kubernetes.errors import BootstrapError, VaultAuthKubernetesError
from vault_auth_kubernetes.role import WILDCARD, Role
from vault_auth_kubernetes.roles import load_roles, service_accounts_by_namespace

logger = logging.getLogger(__name__)

# token reviewer, https://developer.hashicorp.com/vault/docs/auth/kubernetes#configuring-kubernetes
TOKEN_REVIEWER_SERVICE_ACCOUNT = "token-reviewer"
TOKEN_REVIEWER_NAMESPACE = "vault-auth"
TOKEN_REVIEWER_CLUSTER_ROLE_BINDING = "vault-auth-token-reviewer"

ROLES_CONFIG_MAP = "vault-auth-roles"
ROLES_CONFIG_MAP_NAMESPACE = "vault-auth"
RECONCILE_INTERVAL_SECONDS = 10

MANAGED_ANNOTATIONS = {"vak-managed": "true"}


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class RoleStore(Protocol):
    """Vault operations the reconciler needs."""

    def init_auth(
        self,
        kubernetes_host: str,
        kubernetes_ca_cert: Union[bytes, str],
        token_reviewer_jwt: Union[bytes, str],
    ) -> bool: ...

    def list_roles(self) -> List[str]: ...

    def create_role(self, name: str, role: Role) -> bool: ...

    def delete_role(self, name: str) -> bool: ...


class Cluster(Protocol):
    """Kubernetes operations the reconciler needs."""

    def get_namespaces(self) -> List[str]: ...

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]: ...

    def get_service_accounts(self, namespace: str, annotations: Optional[Dict[str, str]] = None) -> List[str]: ...

    def create_service_account(
        self, namespace: str, name: str, annotations: Optional[Dict[str, str]] = None,
    ) -> bool: ...

    def delete_service_account(self, namespace: str, name: str) -> bool: ...

    def get_service_account_token(self, namespace: str, name: str) -> bytes: ...

    def create_auth_delegator_cluster_role_binding(
        self, binding_name: str, namespace: str, service_account: str,
    ) -> bool: ...


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class PassResult:
    """Outcome of one reconcile pass."""

    def __init__(self) -> None:
        self.skipped = False
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.failed: List[str] = []

    @property
    def changes(self) -> int:
        return len(self.created) + len(self.deleted)

    def __repr__(self) -> str:
        return (
            f"PassResult(skipped={self.skipped}, created={self.created}, "
            f"deleted={self.deleted}, failed={self.failed})"
        )


class Reconciler:
    def __init__(
        self,
        store: RoleStore,
        cluster: Cluster,
        kubernetes_host: str,
        kubernetes_ca: Union[bytes, str],
        interval: float = RECONCILE_INTERVAL_SECONDS,
        roles_namespace: str = ROLES_CONFIG_MAP_NAMESPACE,
        roles_config_map: str = ROLES_CONFIG_MAP,
        reviewer_namespace: str = TOKEN_REVIEWER_NAMESPACE,
        reviewer_service_account: str = TOKEN_REVIEWER_SERVICE_ACCOUNT,
        reviewer_binding: str = TOKEN_REVIEWER_CLUSTER_ROLE_BINDING,
        annotations: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.cluster = cluster
        self.kubernetes_host = kubernetes_host
        self.kubernetes_ca = kubernetes_ca
        self.interval = interval
        self.roles_namespace = roles_namespace
        self.roles_config_map = roles_config_map
        self.reviewer_namespace = reviewer_namespace
        self.reviewer_service_account = reviewer_service_account
        self.reviewer_binding = reviewer_binding
        self.annotations = dict(annotations) if annotations is not None else dict(MANAGED_ANNOTATIONS)

    # -- bootstrap -----------------------------------------------------------

    def init_token_reviewer(self) -> None:
        """Create the token reviewer identity and initialise Vault auth with it.

        Any failing step raises :class:`BootstrapError`.
        """
        ns, sa = self.reviewer_namespace, self.reviewer_service_account
        logger.info("initialising token reviewer %s in %s namespace", sa, ns)

        try:
            self.cluster.create_service_account(ns, sa, None)
        except VaultAuthKubernetesError as e:
            raise BootstrapError(f"create service account: {e}") from e

        try:
            token = self.cluster.get_service_account_token(ns, sa)
        except VaultAuthKubernetesError as e:
            raise BootstrapError(f"get service account token: {e}") from e

        try:
            self.cluster.create_auth_delegator_cluster_role_binding(self.reviewer_binding, ns, sa)
        except VaultAuthKubernetesError as e:
            raise BootstrapError(f"create auth delegator cluster role binding: {e}") from e

        try:
            self.store.init_auth(self.kubernetes_host, self.kubernetes_ca, token)
        except VaultAuthKubernetesError as e:
            raise BootstrapError(f"init vault kubernetes auth: {e}") from e

    # -- desired state -------------------------------------------------------

    def load_desired_roles(self) -> Optional[Dict[str, Role]]:
        """Roles from the config map, or None when it cannot be read."""
        try:
            data = self.cluster.get_config_map_data(self.roles_namespace, self.roles_config_map)
        except VaultAuthKubernetesError as e:
            logger.error(
                "get vault auth kubernetes roles from config map %s in %s namespace: %s",
                self.roles_config_map, self.roles_namespace, e,
            )
            return None
        source = f"config map {self.roles_config_map} in {self.roles_namespace} namespace"
        return load_roles(data, source)

    # -- convergence ---------------------------------------------------------

    def converge_service_accounts(self, required: Mapping[str, Set[str]], result: PassResult) -> None:
        try:
            namespaces = self.cluster.get_namespaces()
        except VaultAuthKubernetesError as e:
            logger.error("converge service accounts: get namespaces: %s", e)
            result.failed.append("namespaces")
            return

        existing: Dict[str, Set[str]] = {}
        for ns in namespaces:
            try:
                managed = self.cluster.get_service_accounts(ns, self.annotations)
            except VaultAuthKubernetesError as e:
                logger.error("get service accounts in %s namespace: %s", ns, e)
                result.failed.append(f"serviceaccounts/{ns}")
                continue

            existing[ns] = set(managed)
            wanted = required.get(ns, set())
            for sa in managed:
                if sa in wanted:
                    continue
                try:
                    if self.cluster.delete_service_account(ns, sa):
                        result.deleted.append(f"serviceaccount/{ns}/{sa}")
                except VaultAuthKubernetesError as e:
                    logger.error("service account %s in %s namespace is not in config: delete: %s", sa, ns, e)
                    result.failed.append(f"serviceaccount/{ns}/{sa}")
                else:
                    existing[ns].discard(sa)

        for ns in namespaces:
            for sa in sorted(required.get(ns, ())):
                # a wildcard binds any account, there is nothing to create
                if sa == WILDCARD or sa in existing.get(ns, ()):
                    continue
                try:
                    if self.cluster.create_service_account(ns, sa, self.annotations):
                        result.created.append(f"serviceaccount/{ns}/{sa}")
                except VaultAuthKubernetesError as e:
                    logger.error("create service account %s in %s namespace: %s", sa, ns, e)
                    result.failed.append(f"serviceaccount/{ns}/{sa}")

    def converge_roles(self, roles: Mapping[str, Role], result: PassResult) -> None:
        try:
            in_vault: Optional[List[str]] = self.store.list_roles()
        except VaultAuthKubernetesError as e:
            logger.error("delete vault roles: list roles: %s", e)
            result.failed.append("roles")
            in_vault = None

        for name in in_vault or ():
            if name in roles:
                continue
            try:
                if self.store.delete_role(name):
                    result.deleted.append(f"role/{name}")
            except VaultAuthKubernetesError as e:
                logger.error("delete vault role %s: %s", name, e)
                result.failed.append(f"role/{name}")

        for name in sorted(roles):
            try:
                if self.store.create_role(name, roles[name]):
                    result.created.append(f"role/{name}")
            except VaultAuthKubernetesError as e:
                logger.error("create vault role %s: %s", name, e)
                result.failed.append(f"role/{name}")

    def reconcile(self) -> PassResult:
        """Run one pass. Never raises for per-item failures."""
        result = PassResult()
        roles = self.load_desired_roles()
        if roles is None:
            result.skipped = True
            return result

        self.converge_service_accounts(service_accounts_by_namespace(roles), result)
        self.converge_roles(roles, result)

        if result.changes or result.failed:
            logger.info(
                "reconcile pass: %d created, %d deleted, %d failed",
                len(result.created), len(result.deleted), len(result.failed),
            )
        return result

    def run(self, stop: Optional[threading.Event] = None, max_passes: Optional[int] = None) -> int:
        """Bootstrap, then reconcile every ``interval`` seconds until stopped.

        ``stop`` is only checked between passes. Only a bootstrap failure
        ends the loop; a pass that fails is logged and the next one runs on
        schedule. Returns the number of passes.
        """
        stop = stop or threading.Event()
        self.init_token_reviewer()

        passes = 0
        while not stop.is_set():
            try:
                self.reconcile()
            except Exception:
                logger.exception("reconcile pass failed")
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
            stop.wait(self.interval)
        return passes
