"""
Permission preflight - Verifies the RBAC rules the watch source needs.

Issues one SelfSubjectAccessReview per required verb and resource and logs
the outcome of each.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Tuple

from watch.kubernetes import KubernetesClient, KubernetesError

logger = logging.getLogger(__name__)

ACCESS_REVIEW_PATH = "/apis/authorization.k8s.io/v1/selfsubjectaccessreviews"


class PermissionOutcome(Enum):
    OK = "ok"
    ERROR = "error"


class PermissionDeniedError(Exception):
    """Raised when required permissions are missing."""

    def __init__(self, message: str, missing: Iterable[str] = ()):
        self.message = message
        self.missing = list(missing)
        super().__init__(message)


@dataclass(frozen=True)
class RequiredPermission:
    """Verbs needed on one resource."""

    resource: str
    verbs: Tuple[str, ...]
    group: str = ""

    def key(self, verb: str) -> str:
        """Permission key, e.g. ``pods/list`` or ``apps/deployments/get``."""
        prefix = f"{self.group}/" if self.group else ""
        return f"{prefix}{self.resource}/{verb}"


REQUIRED_PERMISSIONS = (
    RequiredPermission(resource="services", verbs=("get", "list", "watch")),
    RequiredPermission(resource="pods", verbs=("get", "list", "watch")),
)


@dataclass
class PermissionCheckResult:
    """Outcome per permission key."""

    permissions: Dict[str, PermissionOutcome] = field(default_factory=dict)

    def has_errors(self) -> bool:
        return any(o is PermissionOutcome.ERROR for o in self.permissions.values())

    def has_permissions(self, keys: Iterable[str]) -> bool:
        return all(self.permissions.get(k) is PermissionOutcome.OK for k in keys)

    @property
    def missing(self):
        return sorted(
            k for k, o in self.permissions.items() if o is PermissionOutcome.ERROR
        )


async def check_permissions(
    client: KubernetesClient,
    namespace: str = "",
    required: Iterable[RequiredPermission] = REQUIRED_PERMISSIONS,
) -> PermissionCheckResult:
    """
    Ask the API server whether the current identity holds each permission.

    A review that cannot be performed counts as missing.
    """
    result = PermissionCheckResult()
    for permission in required:
        for verb in permission.verbs:
            key = permission.key(verb)
            review = {
                "apiVersion": "authorization.k8s.io/v1",
                "kind": "SelfSubjectAccessReview",
                "spec": {
                    "resourceAttributes": {
                        "namespace": namespace,
                        "verb": verb,
                        "resource": permission.resource,
                        "group": permission.group,
                    }
                },
            }
            try:
                response = await client.post(ACCESS_REVIEW_PATH, review)
                allowed = bool((response.get("status") or {}).get("allowed"))
            except KubernetesError as e:
                logger.error(f"Failed to check permission {key}: {e.message}")
                allowed = False
            result.permissions[key] = (
                PermissionOutcome.OK if allowed else PermissionOutcome.ERROR
            )

    _log_result(result)
    return result


def _log_result(result: PermissionCheckResult) -> None:
    logger.info("Permission check results:")
    for key, outcome in sorted(result.permissions.items()):
        if outcome is PermissionOutcome.OK:
            logger.debug(f"Permission granted: {key}")
        else:
            logger.error(f"Permission missing: {key}")
    if not result.has_errors():
        logger.info("All permissions granted")


async def require_permissions(client: KubernetesClient, namespace: str = "") -> None:
    """
    Run the preflight and fail if anything is missing.

    Raises:
        PermissionDeniedError: If any required permission is missing
    """
    result = await check_permissions(client, namespace)
    if result.has_errors():
        raise PermissionDeniedError(
            f"Required permissions are missing: {', '.join(result.missing)}",
            missing=result.missing,
        )
