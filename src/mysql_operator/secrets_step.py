"""Users secret convergence.

Ensures the cluster's users Secret holds a password for every system user
the MySQL topology needs. Existing passwords are never rotated: the step
only creates the Secret or adds keys that are missing, so applying it
repeatedly converges and then stays quiet.
"""

from __future__ import annotations

import base64
import secrets
import string
from typing import TYPE_CHECKING, Any

from kubernetes.client.rest import ApiException

from .kube import call_api, to_dict
from .steps import ConvergenceStep, PermanentStepError, step_error_from

if TYPE_CHECKING:
    from .context import ReconcileContext
    from .models import MySQLCluster

# System users provisioned for every cluster
SYSTEM_USERS: tuple[str, ...] = (
    "root",
    "operator",
    "xtrabackup",
    "monitor",
    "replication",
    "orchestrator",
    "heartbeat",
)

# Avoid quote, backslash and shell metacharacters that break my.cnf and scripts
PASSWORD_SYMBOLS = "!#$%&()*+,-.<=>?@[]^_{}~"
PASSWORD_ALPHABET = string.ascii_letters + string.digits + PASSWORD_SYMBOLS

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "mysql-operator"


def generate_password(length: int) -> str:
    """Generate a random password with at least one letter and one digit."""
    if length < 2:
        raise ValueError("password length must be at least 2")
    while True:
        password = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
        if any(c.isalpha() for c in password) and any(c.isdigit() for c in password):
            return password


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class UsersSecretStep(ConvergenceStep):
    """Converges the system users Secret."""

    name = "secrets"

    def __init__(self, core_api: Any, users: tuple[str, ...] = SYSTEM_USERS) -> None:
        """Initialize the step.

        Args:
            core_api: A kubernetes.client.CoreV1Api (or compatible).
            users: System users that must have a password.
        """
        self._core = core_api
        self._users = users

    async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        secret_name = cluster.spec.secrets_name
        password_length = cluster.spec.credential_policy.password_length
        if not secret_name or password_length is None:
            raise PermanentStepError("users secret requested on a record that was not defaulted")

        namespace = cluster.metadata.namespace
        self.check_cancelled(ctx)

        try:
            existing = await call_api(self._core.read_namespaced_secret, secret_name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise step_error_from(e, f"read secret {secret_name}") from e
            existing = None
        except Exception as e:
            raise step_error_from(e, f"read secret {secret_name}") from e

        self.check_cancelled(ctx)

        if existing is None:
            data = {user: _encode(generate_password(password_length)) for user in self._users}
            body = {
                "apiVersion": "v1",
                "kind": "Secret",
                "type": "Opaque",
                "metadata": {
                    "name": secret_name,
                    "namespace": namespace,
                    "labels": {
                        MANAGED_BY_LABEL: MANAGED_BY,
                        "app.kubernetes.io/instance": cluster.metadata.name,
                    },
                    "ownerReferences": [cluster.owner_reference()],
                },
                "data": data,
            }
            try:
                await call_api(self._core.create_namespaced_secret, namespace, body)
            except Exception as e:
                # 409 means a concurrent writer won; the next pass fills gaps
                raise step_error_from(e, f"create secret {secret_name}") from e

            ctx.log.info(
                "Created users secret",
                extra={"secret": secret_name, "users": len(self._users)},
            )
            return

        current = to_dict(existing).get("data") or {}
        missing = [user for user in self._users if not current.get(user)]
        if not missing:
            ctx.log.debug("Users secret up to date", extra={"secret": secret_name})
            return

        patch = {"data": {user: _encode(generate_password(password_length)) for user in missing}}
        try:
            await call_api(self._core.patch_namespaced_secret, secret_name, namespace, patch)
        except Exception as e:
            raise step_error_from(e, f"patch secret {secret_name}") from e

        ctx.log.info(
            "Added missing users to secret",
            extra={"secret": secret_name, "users": missing},
        )
