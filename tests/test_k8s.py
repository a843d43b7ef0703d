"""Tests for the kubernetes client wrapper and kubeconfig loading."""
from __future__ import annotations

import base64
from unittest.mock import MagicMock, patch

import pytest
import urllib3
import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from vault_auth_kubernetes.errors import KubernetesError, RetriesExceededError
from vault_auth_kubernetes.k8s import (
    AUTH_DELEGATOR_CLUSTER_ROLE,
    KubernetesClient,
    has_annotations,
    is_cluster_role_binding_equal,
    load_kubeconfig,
    new_auth_delegator_cluster_role_binding,
    new_service_account,
)

CA_PEM = b"-----BEGIN CERTIFICATE-----\nMIIBtestca\n-----END CERTIFICATE-----\n"
MANAGED = {"vak-managed": "true"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def service_account(name, annotations=None, secrets=None):
    return client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(name=name, annotations=annotations),
        secrets=[client.V1ObjectReference(name=s) for s in secrets] if secrets else None,
    )


def new_client():
    core = MagicMock(spec=client.CoreV1Api)
    rbac = MagicMock(spec=client.RbacAuthorizationV1Api)
    return KubernetesClient(core=core, rbac=rbac), core, rbac


def write_kubeconfig(tmp_path):
    kubeconfig = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{
            "name": "test",
            "cluster": {
                "server": "https://kube.example.com:6443",
                "certificate-authority-data": base64.b64encode(CA_PEM).decode(),
            },
        }],
        "users": [{"name": "admin", "user": {"token": "admin-token"}}],
        "contexts": [{"name": "test", "context": {"cluster": "test", "user": "admin"}}],
        "current-context": "test",
    }
    path = tmp_path / "kubeconfig"
    path.write_text(yaml.safe_dump(kubeconfig))
    return path


# ===========================================================================
# Test cases
# ===========================================================================

class TestLoadKubeconfig:

    def test_load_from_file(self, tmp_path):
        kubeconfig = load_kubeconfig(str(write_kubeconfig(tmp_path)))
        assert kubeconfig.host == "https://kube.example.com:6443"
        assert kubeconfig.ca == CA_PEM
        assert isinstance(kubeconfig.api_client, client.ApiClient)

    def test_missing_file(self, tmp_path):
        with pytest.raises(KubernetesError):
            load_kubeconfig(str(tmp_path / "missing"))

    def test_cluster_without_ca(self, tmp_path):
        path = write_kubeconfig(tmp_path)
        data = yaml.safe_load(path.read_text())
        del data["clusters"][0]["cluster"]["certificate-authority-data"]
        path.write_text(yaml.safe_dump(data))

        with pytest.raises(KubernetesError, match="CA"):
            load_kubeconfig(str(path))

    def test_empty_path_tries_in_cluster_first(self, tmp_path):
        ca_file = tmp_path / "ca.crt"
        ca_file.write_bytes(CA_PEM)

        def in_cluster(client_configuration):
            client_configuration.host = "https://10.0.0.1:443"
            client_configuration.ssl_ca_cert = str(ca_file)

        with patch("vault_auth_kubernetes.k8s.k8s_config.load_incluster_config", side_effect=in_cluster), \
                patch("vault_auth_kubernetes.k8s.k8s_config.load_kube_config") as load_kube_config:
            kubeconfig = load_kubeconfig("")

        assert kubeconfig.host == "https://10.0.0.1:443"
        assert kubeconfig.ca == CA_PEM
        load_kube_config.assert_not_called()

    def test_empty_path_falls_back_to_default_kubeconfig(self, tmp_path):
        ca_file = tmp_path / "ca.crt"
        ca_file.write_bytes(CA_PEM)

        def from_file(client_configuration):
            client_configuration.host = "https://kube.example.com:6443"
            client_configuration.ssl_ca_cert = str(ca_file)

        with patch("vault_auth_kubernetes.k8s.k8s_config.load_incluster_config",
                   side_effect=ConfigException("not running in a cluster")), \
                patch("vault_auth_kubernetes.k8s.k8s_config.load_kube_config", side_effect=from_file) as load_kube_config:
            kubeconfig = load_kubeconfig("")

        assert kubeconfig.host == "https://kube.example.com:6443"
        load_kube_config.assert_called_once()


class TestBuilders:

    def test_new_service_account(self):
        sa = new_service_account("test", "app", MANAGED)
        assert sa.metadata.name == "app"
        assert sa.metadata.namespace == "test"
        assert sa.metadata.annotations == MANAGED

    def test_new_service_account_without_annotations(self):
        assert new_service_account("test", "app").metadata.annotations is None

    def test_auth_delegator_binding(self):
        binding = new_auth_delegator_cluster_role_binding("vault-auth-token-reviewer", "vault-auth", "token-reviewer")
        assert binding.role_ref.name == AUTH_DELEGATOR_CLUSTER_ROLE
        assert binding.role_ref.kind == "ClusterRole"
        assert [(s.kind, s.name, s.namespace) for s in binding.subjects] == [
            ("ServiceAccount", "token-reviewer", "vault-auth"),
        ]

    def test_binding_equality(self):
        a = new_auth_delegator_cluster_role_binding("b", "vault-auth", "token-reviewer")
        b = new_auth_delegator_cluster_role_binding("b", "vault-auth", "token-reviewer")
        c = new_auth_delegator_cluster_role_binding("b", "other", "token-reviewer")
        assert is_cluster_role_binding_equal(a, b)
        assert not is_cluster_role_binding_equal(a, c)

    def test_has_annotations(self):
        assert has_annotations(service_account("a", {"vak-managed": "true", "x": "y"}), MANAGED)
        assert not has_annotations(service_account("a", {"vak-managed": "false"}), MANAGED)
        assert not has_annotations(service_account("a"), MANAGED)


class TestReads:

    def test_get_namespaces(self):
        kube, core, _ = new_client()
        core.list_namespace.return_value = client.V1NamespaceList(items=[
            client.V1Namespace(metadata=client.V1ObjectMeta(name="default")),
            client.V1Namespace(metadata=client.V1ObjectMeta(name="kube-system")),
        ])
        assert kube.get_namespaces() == ["default", "kube-system"]

    def test_get_namespaces_failure(self):
        kube, core, _ = new_client()
        core.list_namespace.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(KubernetesError, match="403"):
            kube.get_namespaces()

    def test_transport_failure_is_wrapped(self):
        kube, core, _ = new_client()
        core.list_namespace.side_effect = urllib3.exceptions.ProtocolError("connection aborted")
        with pytest.raises(KubernetesError):
            kube.get_namespaces()

    def test_get_config_map_data(self):
        kube, core, _ = new_client()
        core.read_namespaced_config_map.return_value = client.V1ConfigMap(data={"app": "{}"})
        assert kube.get_config_map_data("vault-auth", "vault-auth-roles") == {"app": "{}"}
        core.read_namespaced_config_map.assert_called_once_with(name="vault-auth-roles", namespace="vault-auth")

    def test_empty_config_map(self):
        kube, core, _ = new_client()
        core.read_namespaced_config_map.return_value = client.V1ConfigMap(data=None)
        assert kube.get_config_map_data("vault-auth", "vault-auth-roles") == {}

    def test_missing_config_map(self):
        kube, core, _ = new_client()
        core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(KubernetesError):
            kube.get_config_map_data("vault-auth", "vault-auth-roles")

    def test_get_service_accounts_filters_by_annotations(self):
        kube, core, _ = new_client()
        core.list_namespaced_service_account.return_value = client.V1ServiceAccountList(items=[
            service_account("default"),
            service_account("app", MANAGED),
            service_account("other", {"vak-managed": "false"}),
        ])
        assert kube.get_service_accounts("test", MANAGED) == ["app"]
        assert kube.get_service_accounts("test") == ["default", "app", "other"]


class TestServiceAccountWrites:

    def test_create(self):
        kube, core, _ = new_client()
        assert kube.create_service_account("test", "app", MANAGED) is True
        body = core.create_namespaced_service_account.call_args.kwargs["body"]
        assert body.metadata.name == "app"
        assert body.metadata.annotations == MANAGED

    def test_create_existing(self):
        kube, core, _ = new_client()
        core.create_namespaced_service_account.side_effect = ApiException(status=409, reason="Conflict")
        assert kube.create_service_account("test", "app") is False

    def test_create_failure(self):
        kube, core, _ = new_client()
        core.create_namespaced_service_account.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(KubernetesError):
            kube.create_service_account("test", "app")

    def test_delete(self):
        kube, core, _ = new_client()
        assert kube.delete_service_account("test", "app") is True
        core.delete_namespaced_service_account.assert_called_once_with(name="app", namespace="test")

    def test_delete_missing(self):
        kube, core, _ = new_client()
        core.delete_namespaced_service_account.side_effect = ApiException(status=404, reason="Not Found")
        assert kube.delete_service_account("test", "app") is False

    def test_delete_failure(self):
        kube, core, _ = new_client()
        core.delete_namespaced_service_account.side_effect = ApiException(status=500, reason="Error")
        with pytest.raises(KubernetesError):
            kube.delete_service_account("test", "app")


class TestServiceAccountToken:

    def test_token_is_decoded(self):
        kube, core, _ = new_client()
        core.read_namespaced_service_account.return_value = service_account(
            "token-reviewer", secrets=["token-reviewer-token-x7k2p"])
        core.read_namespaced_secret.return_value = client.V1Secret(
            data={"token": base64.b64encode(b"eyJhbGciOi").decode(), "namespace": "dmF1bHQtYXV0aA=="})

        assert kube.get_service_account_token("vault-auth", "token-reviewer") == b"eyJhbGciOi"
        core.read_namespaced_secret.assert_called_once_with(
            name="token-reviewer-token-x7k2p", namespace="vault-auth")

    @patch("vault_auth_kubernetes.k8s.time.sleep")
    def test_waits_for_token_secret(self, sleep):
        kube, core, _ = new_client()
        core.read_namespaced_service_account.side_effect = [
            service_account("token-reviewer"),
            service_account("token-reviewer"),
            service_account("token-reviewer", secrets=["token-reviewer-token-x7k2p"]),
        ]
        core.read_namespaced_secret.return_value = client.V1Secret(
            data={"token": base64.b64encode(b"jwt").decode()})

        assert kube.get_service_account_token("vault-auth", "token-reviewer") == b"jwt"
        assert sleep.call_count == 2

    @patch("vault_auth_kubernetes.k8s.time.sleep")
    def test_gives_up_when_secret_never_appears(self, sleep):
        kube, core, _ = new_client()
        core.read_namespaced_service_account.return_value = service_account("token-reviewer")

        with pytest.raises(RetriesExceededError):
            kube.get_service_account_token("vault-auth", "token-reviewer", retries=5)

        assert core.read_namespaced_service_account.call_count == 6
        assert sleep.call_count == 5
        core.read_namespaced_secret.assert_not_called()

    def test_secret_without_token(self):
        kube, core, _ = new_client()
        core.read_namespaced_service_account.return_value = service_account("token-reviewer", secrets=["s"])
        core.read_namespaced_secret.return_value = client.V1Secret(data={"ca.crt": "Y2E="})
        with pytest.raises(KubernetesError, match="data.token"):
            kube.get_service_account_token("vault-auth", "token-reviewer")


class TestClusterRoleBinding:

    def test_created_when_missing(self):
        kube, _, rbac = new_client()
        rbac.read_cluster_role_binding.side_effect = ApiException(status=404, reason="Not Found")

        assert kube.create_auth_delegator_cluster_role_binding(
            "vault-auth-token-reviewer", "vault-auth", "token-reviewer") is True

        body = rbac.create_cluster_role_binding.call_args.kwargs["body"]
        assert body.metadata.name == "vault-auth-token-reviewer"
        rbac.replace_cluster_role_binding.assert_not_called()

    def test_equal_binding_is_left_alone(self):
        kube, _, rbac = new_client()
        rbac.read_cluster_role_binding.return_value = new_auth_delegator_cluster_role_binding(
            "vault-auth-token-reviewer", "vault-auth", "token-reviewer")

        assert kube.create_auth_delegator_cluster_role_binding(
            "vault-auth-token-reviewer", "vault-auth", "token-reviewer") is False

        rbac.create_cluster_role_binding.assert_not_called()
        rbac.replace_cluster_role_binding.assert_not_called()

    def test_changed_binding_is_replaced(self):
        kube, _, rbac = new_client()
        rbac.read_cluster_role_binding.return_value = new_auth_delegator_cluster_role_binding(
            "vault-auth-token-reviewer", "default", "token-reviewer")

        assert kube.create_auth_delegator_cluster_role_binding(
            "vault-auth-token-reviewer", "vault-auth", "token-reviewer") is True

        rbac.replace_cluster_role_binding.assert_called_once()
        assert rbac.replace_cluster_role_binding.call_args.kwargs["name"] == "vault-auth-token-reviewer"

    def test_read_failure(self):
        kube, _, rbac = new_client()
        rbac.read_cluster_role_binding.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(KubernetesError):
            kube.create_auth_delegator_cluster_role_binding("b", "vault-auth", "token-reviewer")
