"""Tests for parsing, normalizing and comparing Vault kubernetes auth roles."""
from __future__ import annotations

import json

import pytest

from vault_auth_kubernetes.errors import ConflictingWildcardError, RoleError, RoleParseError
from vault_auth_kubernetes.role import Role, equal, parse_role


def raw(**fields) -> str:
    body = {
        "bound_service_account_names": ["default"],
        "bound_service_account_namespaces": ["kube-system"],
        "token_policies": ["test"],
    }
    body.update(fields)
    return json.dumps(body)


class TestParseRole:

    def test_duplicates_are_removed_keeping_order(self):
        role = parse_role(raw(
            bound_service_account_names=["default", "vault-agent-injector", "default"],
            bound_service_account_namespaces=["kube-system", "kube-system", "default"],
        ))
        assert role.bound_service_account_names == ("default", "vault-agent-injector")
        assert role.bound_service_account_namespaces == ("kube-system", "default")

    def test_wildcard_namespace_collapses_namespaces(self):
        role = parse_role(raw(bound_service_account_namespaces=["kube-system", "default", "*"]))
        assert role.bound_service_account_names == ("default",)
        assert role.bound_service_account_namespaces == ("*",)

    def test_wildcard_name_collapses_names(self):
        role = parse_role(raw(
            bound_service_account_names=["*", "default", "vault-agent-injector", "*"],
        ))
        assert role.bound_service_account_names == ("*",)
        assert role.bound_service_account_namespaces == ("kube-system",)

    def test_wildcard_in_both_lists_is_rejected(self):
        with pytest.raises(ConflictingWildcardError):
            parse_role(raw(
                bound_service_account_names=["default", "*"],
                bound_service_account_namespaces=["*"],
            ))

    def test_conflicting_wildcard_is_a_role_error(self):
        assert issubclass(ConflictingWildcardError, RoleError)

    @pytest.mark.parametrize("text", [" - role: invalid json", "", "[1, 2]", "null", b"\xff\xfe"])
    def test_undecodable_input_is_rejected(self, text):
        with pytest.raises(RoleParseError):
            parse_role(text)

    def test_list_of_non_strings_is_rejected(self):
        with pytest.raises(RoleParseError):
            parse_role(raw(token_policies=["a", 1]))

    def test_non_integer_ttl_is_rejected(self):
        with pytest.raises(RoleParseError):
            parse_role(raw(token_ttl="1h"))

    def test_missing_fields_default_to_empty(self):
        role = parse_role(b'{"bound_service_account_names": ["app"]}')
        assert role.bound_service_account_namespaces == ()
        assert role.token_policies == ()
        assert role.token_ttl == 0

    def test_token_fields_are_kept(self):
        role = parse_role(raw(token_policies=["b", "a"], token_ttl=3600))
        assert role.token_policies == ("b", "a")
        assert role.token_ttl == 3600

    def test_unknown_fields_are_ignored(self):
        role = parse_role(raw(audience="vault"))
        assert role.bound_service_account_names == ("default",)


class TestRoleEqual:

    def test_different_fields_are_not_equal(self):
        r1 = Role(("default",), ("test1",), ("test1",), 3600)
        r2 = Role(("vault-injector",), ("test2", "kube-system"), ("test2",), 1800)
        assert not equal(r1, r2)
        assert r1 != r2

    def test_same_fields_are_equal(self):
        r1 = Role(("vault-injector",), ("test", "kube-system"), ("test",), 1800)
        r2 = Role(("vault-injector",), ("test", "kube-system"), ("test",), 1800)
        assert equal(r1, r2)
        assert hash(r1) == hash(r2)

    def test_list_order_does_not_matter(self):
        r1 = Role(("default", "vault-injector"), ("kube-system", "test"), ("test", "default"), 1800)
        r2 = Role(("vault-injector", "default"), ("test", "kube-system"), ("default", "test"), 1800)
        assert equal(r1, r2)

    def test_ttl_matters(self):
        r1 = Role(("default",), ("test",), ("test",), 1800)
        r2 = Role(("default",), ("test",), ("test",), 3600)
        assert not r1.equal(r2)

    def test_parsing_twice_is_equal_and_reordering_keeps_equality(self):
        text = raw(
            bound_service_account_names=["a", "b", "c"],
            bound_service_account_namespaces=["x", "y"],
            token_policies=["p1", "p2"],
        )
        reordered = raw(
            bound_service_account_names=["c", "a", "b"],
            bound_service_account_namespaces=["y", "x"],
            token_policies=["p2", "p1"],
        )
        assert equal(parse_role(text), parse_role(text))
        assert equal(parse_role(text), parse_role(reordered))

    def test_comparison_with_other_types(self):
        assert Role() != "role"

    def test_diff_lists_changed_fields(self):
        current = Role(("default",), ("test",), ("old",), 1800)
        desired = Role(("default",), ("test",), ("new",), 3600)
        diff = current.diff(desired)
        assert len(diff) == 2
        assert "token_policies: ['old'] -> ['new']" in diff
        assert "token_ttl: 1800 -> 3600" in diff


class TestRoleSerialization:

    def test_to_payload(self):
        role = Role(("default",), ("kube-system",), ("test",), 60)
        assert role.to_payload() == {
            "bound_service_account_names": ["default"],
            "bound_service_account_namespaces": ["kube-system"],
            "token_policies": ["test"],
            "token_ttl": 60,
        }

    def test_from_vault_ignores_extra_fields(self):
        data = {
            "alias_name_source": "serviceaccount_uid",
            "bound_service_account_names": ["default"],
            "bound_service_account_namespaces": ["kube-system"],
            "token_policies": ["test"],
            "token_ttl": 60,
            "token_type": "default",
        }
        assert Role.from_vault(data) == Role(("default",), ("kube-system",), ("test",), 60)

    def test_from_vault_handles_missing_values(self):
        role = Role.from_vault({"token_policies": None, "token_ttl": None})
        assert role == Role()

    def test_from_vault_rejects_non_integer_ttl(self):
        with pytest.raises(RoleParseError):
            Role.from_vault({"token_ttl": "1h"})

    def test_from_vault_accepts_numeric_text(self):
        assert Role.from_vault({"token_ttl": "3600"}).token_ttl == 3600
