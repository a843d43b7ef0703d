"""Kubernetes side of vault-auth-kubernetes, on the official python client."""
from __future__ import annotations

import base64
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import urllib3
from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException

from vault_auth_kubernetes.errors import KubernetesError, RetriesExceededError

logger = logging.getLogger(__name__)

AUTH_DELEGATOR_CLUSTER_ROLE = "system:auth-delegator"
RBAC_API_GROUP = "rbac.authorization.k8s.io"
TOKEN_RETRIES = 5
TOKEN_RETRY_DELAY_SECONDS = 0.05


@contextmanager
def api_errors(action: str) -> Iterator[None]:
    """Re-raise client and transport failures as KubernetesError."""
    try:
        yield
    except ApiException as e:
        raise KubernetesError(f"{action}: {e.status} {e.reason}") from e
    except urllib3.exceptions.HTTPError as e:
        raise KubernetesError(f"{action}: {e}") from e


# ---------------------------------------------------------------------------
# Kubeconfig
# ---------------------------------------------------------------------------

class Kubeconfig:
    """API host, cluster CA and an API client for one cluster."""

    def __init__(self, host: str, ca: bytes, api_client: client.ApiClient):
        self.host = host
        self.ca = ca
        self.api_client = api_client


def read_ca(configuration: client.Configuration) -> bytes:
    ca_file = configuration.ssl_ca_cert
    if not ca_file:
        raise KubernetesError("cannot find CA file or CA data in kubeconfig")
    return Path(ca_file).read_bytes()


def load_kubeconfig(path: str = "") -> Kubeconfig:
    """Load a kubeconfig file, or the in-cluster config when path is empty."""
    configuration = client.Configuration()
    try:
        if path:
            k8s_config.load_kube_config(config_file=path, client_configuration=configuration)
        else:
            try:
                k8s_config.load_incluster_config(client_configuration=configuration)
            except k8s_config.ConfigException:
                k8s_config.load_kube_config(client_configuration=configuration)
    except k8s_config.ConfigException as e:
        raise KubernetesError(f"load kubeconfig: {e}") from e

    return Kubeconfig(
        host=configuration.host,
        ca=read_ca(configuration),
        api_client=client.ApiClient(configuration),
    )


# ---------------------------------------------------------------------------
# Object builders
# ---------------------------------------------------------------------------

def new_service_account(
    namespace: str, name: str, annotations: Optional[Dict[str, str]] = None,
) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        api_version="v1",
        kind="ServiceAccount",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=dict(annotations) if annotations else None,
        ),
    )


def new_auth_delegator_cluster_role_binding(
    binding_name: str, namespace: str, service_account: str,
) -> client.V1ClusterRoleBinding:
    return client.V1ClusterRoleBinding(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="ClusterRoleBinding",
        metadata=client.V1ObjectMeta(name=binding_name),
        role_ref=client.V1RoleRef(
            api_group=RBAC_API_GROUP,
            kind="ClusterRole",
            name=AUTH_DELEGATOR_CLUSTER_ROLE,
        ),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=service_account,
                namespace=namespace,
            ),
        ],
    )


def _role_ref_key(binding: client.V1ClusterRoleBinding):
    ref = binding.role_ref
    if ref is None:
        return None
    return (ref.api_group, ref.kind, ref.name)


def _subject_keys(binding: client.V1ClusterRoleBinding):
    return [(s.kind, s.name, s.namespace) for s in (binding.subjects or [])]


def is_cluster_role_binding_equal(a: client.V1ClusterRoleBinding, b: client.V1ClusterRoleBinding) -> bool:
    return (
        a.metadata.name == b.metadata.name
        and _role_ref_key(a) == _role_ref_key(b)
        and _subject_keys(a) == _subject_keys(b)
    )


def has_annotations(service_account: client.V1ServiceAccount, annotations: Dict[str, str]) -> bool:
    current = (service_account.metadata.annotations if service_account.metadata else None) or {}
    return all(current.get(k) == v for k, v in annotations.items())


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class KubernetesClient:
    """Cluster operations needed to bootstrap and reconcile vault auth."""

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        core: Optional[client.CoreV1Api] = None,
        rbac: Optional[client.RbacAuthorizationV1Api] = None,
    ):
        self.core = core if core is not None else client.CoreV1Api(api_client)
        self.rbac = rbac if rbac is not None else client.RbacAuthorizationV1Api(api_client)

    def get_namespaces(self) -> List[str]:
        with api_errors("list namespaces"):
            namespaces = self.core.list_namespace()
        return [ns.metadata.name for ns in namespaces.items]

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        with api_errors(f"get config map {name} in {namespace} namespace"):
            config_map = self.core.read_namespaced_config_map(name=name, namespace=namespace)
        return dict(config_map.data or {})

    def get_service_accounts(self, namespace: str, annotations: Optional[Dict[str, str]] = None) -> List[str]:
        """Names of the service accounts carrying every given annotation."""
        with api_errors(f"list service accounts in {namespace} namespace"):
            service_accounts = self.core.list_namespaced_service_account(namespace=namespace)
        return [
            sa.metadata.name
            for sa in service_accounts.items
            if not annotations or has_annotations(sa, annotations)
        ]

    def create_service_account(
        self, namespace: str, name: str, annotations: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Create the service account; an existing one counts as success."""
        body = new_service_account(namespace, name, annotations)
        try:
            self.core.create_namespaced_service_account(namespace=namespace, body=body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise KubernetesError(
                f"create service account {name} in {namespace} namespace: {e.status} {e.reason}"
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise KubernetesError(f"create service account {name} in {namespace} namespace: {e}") from e
        logger.info("service account %s in %s namespace created", name, namespace)
        return True

    def delete_service_account(self, namespace: str, name: str) -> bool:
        """Delete the service account; a missing one counts as success."""
        try:
            self.core.delete_namespaced_service_account(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(
                f"delete service account {name} in {namespace} namespace: {e.status} {e.reason}"
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise KubernetesError(f"delete service account {name} in {namespace} namespace: {e}") from e
        logger.info("service account %s in %s namespace deleted", name, namespace)
        return True

    def _get_provisioned_service_account(
        self, namespace: str, name: str, retries: int, delay: float,
    ) -> client.V1ServiceAccount:
        # the token secret is attached to a new service account asynchronously
        attempt = 0
        while True:
            with api_errors(f"get service account {name} in {namespace} namespace"):
                service_account = self.core.read_namespaced_service_account(name=name, namespace=namespace)
            if service_account.secrets:
                return service_account
            if attempt >= retries:
                raise RetriesExceededError(
                    f"service account {name} in {namespace} namespace has no secrets: number of retries exceeded"
                )
            attempt += 1
            logger.info(
                "service account %r does not have any secrets, retrying again in %d milliseconds",
                name, int(delay * 1000),
            )
            time.sleep(delay)

    def get_service_account_token(
        self,
        namespace: str,
        name: str,
        retries: int = TOKEN_RETRIES,
        delay: float = TOKEN_RETRY_DELAY_SECONDS,
    ) -> bytes:
        """Return the decoded JWT from the service account's token secret."""
        service_account = self._get_provisioned_service_account(namespace, name, retries, delay)
        secret_name = service_account.secrets[0].name

        with api_errors(f"get secret {secret_name} in {namespace} namespace"):
            secret = self.core.read_namespaced_secret(name=secret_name, namespace=namespace)

        # data also holds 'ca.crt' (the whole chain) and 'namespace'
        token = (secret.data or {}).get("token")
        if not token:
            raise KubernetesError(f"{secret_name} secret does not have data.token field")
        logger.info("token for service account %s in %s namespace retrieved", name, namespace)
        return base64.b64decode(token)

    def create_auth_delegator_cluster_role_binding(
        self, binding_name: str, namespace: str, service_account: str,
    ) -> bool:
        """Bind system:auth-delegator to the service account.

        Returns True when the binding was created or replaced.
        """
        desired = new_auth_delegator_cluster_role_binding(binding_name, namespace, service_account)
        try:
            existing = self.rbac.read_cluster_role_binding(name=binding_name)
        except ApiException as e:
            if e.status != 404:
                raise KubernetesError(f"get cluster role binding {binding_name}: {e.status} {e.reason}") from e
            logger.info("creating new %s cluster role binding", binding_name)
            with api_errors(f"create cluster role binding {binding_name}"):
                self.rbac.create_cluster_role_binding(body=desired)
            return True
        except urllib3.exceptions.HTTPError as e:
            raise KubernetesError(f"get cluster role binding {binding_name}: {e}") from e

        if is_cluster_role_binding_equal(desired, existing):
            return False

        logger.info("updating cluster role binding %s", binding_name)
        with api_errors(f"update cluster role binding {binding_name}"):
            self.rbac.replace_cluster_role_binding(name=binding_name, body=desired)
        return True
