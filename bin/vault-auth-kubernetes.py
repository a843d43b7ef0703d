#!/usr/bin/env python3
"""
vault-auth-kubernetes — keep Vault kubernetes auth in sync with a cluster.

Subcommands:
    run             Bootstrap the token reviewer, then reconcile roles forever (default)
    delete-auth     Unmount the Vault kubernetes auth backend

Roles are read from the 'vault-auth-roles' config map in the 'vault-auth'
namespace, one JSON role definition per key:

    kubectl -n vault-auth create configmap vault-auth-roles \\
        --from-literal=app='{"bound_service_account_names": ["app"],
                             "bound_service_account_namespaces": ["default"],
                             "token_policies": ["app-read"], "token_ttl": 3600}'

Every setting can come from a flag, an environment variable or the YAML file
given with --config, in that order of precedence.
"""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from vault_auth_kubernetes import __version__
from vault_auth_kubernetes.errors import VaultAuthKubernetesError
from vault_auth_kubernetes.k8s import KubernetesClient, load_kubeconfig
from vault_auth_kubernetes.logging_config import setup_logging
from vault_auth_kubernetes.reconciler import RECONCILE_INTERVAL_SECONDS, Reconciler
from vault_auth_kubernetes.vault import VaultClient

logger = logging.getLogger("vault_auth_kubernetes.cli")

VAULT_MOUNT_PREFIX = "kubernetes"
DEFAULT_LOG_LEVEL = "INFO"

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def deep_get(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Retrieve a nested value using a dotted path string."""
    cur: Any = d
    for p in path.split("."):
        if not isinstance(cur, dict) or p not in cur:
            return default
        cur = cur[p]
    return cur


def normalize_mount(mount: str) -> str:
    return mount.strip().strip("/")


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class Settings:
    """Resolved process settings."""

    def __init__(
        self,
        vault_host: str,
        vault_mount: str,
        vault_role_id: str,
        vault_secret_id: str,
        kubeconfig: str = "",
        vault_kube_host: str = "",
        vault_skip_verify: bool = False,
        interval: float = RECONCILE_INTERVAL_SECONDS,
        log_level: str = DEFAULT_LOG_LEVEL,
    ):
        self.vault_host = vault_host
        self.vault_mount = vault_mount
        self.vault_role_id = vault_role_id
        self.vault_secret_id = vault_secret_id
        self.kubeconfig = kubeconfig
        self.vault_kube_host = vault_kube_host
        self.vault_skip_verify = vault_skip_verify
        self.interval = interval
        self.log_level = log_level

    @property
    def auth_mount(self) -> str:
        return f"{VAULT_MOUNT_PREFIX}/{normalize_mount(self.vault_mount)}"

    def __str__(self) -> str:
        return (
            f"kubeconfig: {self.kubeconfig!r} vault-host: {self.vault_host!r} "
            f"vault-mount: {self.vault_mount!r} vault-kube-host: {self.vault_kube_host!r} "
            f"vault-skip-verify: {self.vault_skip_verify} interval: {self.interval} "
            f"vault-role-id ****** vault-secret-id ******"
        )


def resolve_settings(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings: CLI flag > environment > config file > default."""
    environ = os.environ if environ is None else environ
    config = load_config(Path(args.config)) if args.config else {}

    def pick(cli_val: Any, env_var: str, keypath: str, default: Any = None) -> Any:
        if cli_val is not None and (not isinstance(cli_val, str) or cli_val.strip() != ""):
            return cli_val
        env_val = environ.get(env_var)
        if env_val is not None and env_val.strip() != "":
            return env_val
        return deep_get(config, keypath, default)

    vault_host = pick(args.vault_host, "VAK_VAULT_HOST", "vault.host")
    vault_mount = pick(args.vault_mount, "VAK_VAULT_MOUNT", "vault.mount")
    vault_role_id = pick(args.vault_role_id, "VAK_VAULT_ROLE_ID", "vault.role_id")
    vault_secret_id = pick(args.vault_secret_id, "VAK_VAULT_SECRET_ID", "vault.secret_id")

    missing = []
    for name, val in [
        ("vault-host", vault_host),
        ("vault-mount", vault_mount),
        ("vault-role-id", vault_role_id),
        ("vault-secret-id", vault_secret_id),
    ]:
        if not val:
            missing.append(name)
    if missing:
        raise SystemExit(f"Missing required settings: {', '.join(missing)}")

    interval = pick(args.interval, "VAK_INTERVAL", "reconcile.interval", RECONCILE_INTERVAL_SECONDS)
    try:
        interval = float(interval)
    except (TypeError, ValueError):
        raise SystemExit(f"interval must be a number of seconds, got {interval!r}")
    if interval <= 0:
        raise SystemExit(f"interval must be positive, got {interval}")

    return Settings(
        vault_host=str(vault_host),
        vault_mount=normalize_mount(str(vault_mount)),
        vault_role_id=str(vault_role_id),
        vault_secret_id=str(vault_secret_id),
        kubeconfig=str(pick(args.kubeconfig, "KUBECONFIG", "kubernetes.kubeconfig", "")),
        vault_kube_host=str(pick(args.vault_kube_host, "VAK_VAULT_KUBE_HOST", "vault.kube_host", "")),
        vault_skip_verify=parse_bool(pick(args.vault_skip_verify, "VAK_VAULT_SKIP_VERIFY", "vault.skip_verify", False)),
        interval=interval,
        log_level=str(pick(args.log_level, "VAK_LOG_LEVEL", "logging.level", DEFAULT_LOG_LEVEL)),
    )


def new_vault_client(settings: Settings) -> VaultClient:
    return VaultClient(
        host=settings.vault_host,
        role_id=settings.vault_role_id,
        secret_id=settings.vault_secret_id,
        mount=settings.auth_mount,
        verify=not settings.vault_skip_verify,
    )


def install_signal_handlers(stop: threading.Event) -> None:
    def _stop(signum, _frame):
        logger.info("received signal %d, stopping after the current pass", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def _start(args: argparse.Namespace) -> Settings:
    settings = resolve_settings(args)
    setup_logging(settings.log_level, secrets=[settings.vault_secret_id, settings.vault_role_id])
    logger.info("starting vault-auth-kubernetes %s with settings: %s", __version__, settings)
    return settings


# ---------------------------------------------------------------------------
# run subcommand
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    """Bootstrap the token reviewer and reconcile until stopped."""
    settings = _start(args)

    try:
        kubeconfig = load_kubeconfig(settings.kubeconfig)
    except VaultAuthKubernetesError as e:
        logger.error("get kubeconfig: %s", e)
        return 1

    kube_host = settings.vault_kube_host
    if not kube_host:
        kube_host = kubeconfig.host
        logger.info("vault-kube-host not set, setting host to %s (from kubeconfig)", kube_host)

    vault = new_vault_client(settings)
    try:
        vault.login()
    except VaultAuthKubernetesError as e:
        logger.error("new vault client: %s", e)
        return 1

    reconciler = Reconciler(
        store=vault,
        cluster=KubernetesClient(kubeconfig.api_client),
        kubernetes_host=kube_host,
        kubernetes_ca=kubeconfig.ca,
        interval=settings.interval,
    )

    stop = threading.Event()
    install_signal_handlers(stop)
    try:
        passes = reconciler.run(stop, max_passes=1 if getattr(args, "once", False) else None)
    except VaultAuthKubernetesError as e:
        logger.error("auth run: %s", e)
        return 1

    logger.info("stopped after %d reconcile pass(es)", passes)
    return 0


# ---------------------------------------------------------------------------
# delete-auth subcommand
# ---------------------------------------------------------------------------

def cmd_delete_auth(args: argparse.Namespace) -> int:
    """Unmount the kubernetes auth backend, removing every role with it."""
    settings = _start(args)

    vault = new_vault_client(settings)
    try:
        vault.login()
        deleted = vault.delete_auth()
    except VaultAuthKubernetesError as e:
        logger.error("delete auth: %s", e)
        return 1

    if deleted:
        logger.info("auth backend %s/ deleted", settings.auth_mount)
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-auth-kubernetes",
        description="Keep Vault kubernetes auth roles and service accounts in sync with a cluster.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", default=None,
                        help="Path to a YAML settings file")
    parser.add_argument("--kubeconfig", default=None,
                        help="Path to kubeconfig file, or empty for in-cluster kubeconfig [KUBECONFIG]")
    parser.add_argument("--vault-host", default=None, help="Vault URL [VAK_VAULT_HOST]")
    parser.add_argument("--vault-mount", default=None,
                        help="Vault kubernetes mount e.g. cluster-name, or environment/cluster-name [VAK_VAULT_MOUNT]")
    parser.add_argument("--vault-kube-host", default=None,
                        help="Kubernetes API that can be reached from Vault, defaults to host from kubeconfig "
                             "[VAK_VAULT_KUBE_HOST]")
    parser.add_argument("--vault-role-id", default=None, help="Vault approle role id [VAK_VAULT_ROLE_ID]")
    parser.add_argument("--vault-secret-id", default=None, help="Vault approle secret id [VAK_VAULT_SECRET_ID]")
    parser.add_argument("--vault-skip-verify", action="store_true", default=None,
                        help="Do not verify the Vault TLS certificate [VAK_VAULT_SKIP_VERIFY]")
    parser.add_argument("--interval", default=None,
                        help=f"Seconds between reconcile passes (default: {RECONCILE_INTERVAL_SECONDS}) [VAK_INTERVAL]")
    parser.add_argument("--log-level", default=None,
                        help=f"Log level (default: {DEFAULT_LOG_LEVEL}) [VAK_LOG_LEVEL]")

    subs = parser.add_subparsers(dest="command", help="Subcommand")

    # -- run -----------------------------------------------------------------
    p_run = subs.add_parser("run", help="Bootstrap and reconcile (default)")
    p_run.add_argument("--once", action="store_true",
                       help="Exit after the first reconcile pass")

    # -- delete-auth ---------------------------------------------------------
    subs.add_parser("delete-auth", help="Unmount the Vault kubernetes auth backend")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    dispatch = {
        "run": cmd_run,
        "delete-auth": cmd_delete_auth,
    }

    return dispatch[args.command or "run"](args)


if __name__ == "__main__":
    sys.exit(main())
