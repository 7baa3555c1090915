"""
Kind based install/uninstall ordering of resource objects.

An approximation of dependency order (namespaces before namespaced objects,
RBAC before workloads), not a dependency graph.
"""

from typing import Any, Dict, List, Sequence, Tuple

InstallOrder: Tuple[str, ...] = (
    "Namespace",
    "ResourceQuota",
    "LimitRange",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ServiceAccount",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "StatefulSet",
    "Job",
    "CronJob",
    "Ingress",
    "APIService",
)

UninstallOrder: Tuple[str, ...] = tuple(reversed(InstallOrder))


def _kind(obj: Dict[str, Any]) -> str:
    return obj.get("kind") or ""


def _name(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name") or ""


def sort_objects(
    objects: Sequence[Dict[str, Any]], order: Sequence[str] = InstallOrder
) -> List[Dict[str, Any]]:
    """
    Return the objects sorted by kind priority.

    Known kinds follow ``order``; objects of equal priority sort by name.
    Unknown kinds come after every known kind, grouped by kind name and
    then sorted by object name.
    """
    priority = {kind: index for index, kind in enumerate(order)}
    unknown = len(priority)

    def sort_key(obj: Dict[str, Any]) -> Tuple[int, str, str]:
        kind = _kind(obj)
        if kind in priority:
            # Known kinds never tie-break on kind name
            return priority[kind], "", _name(obj)
        return unknown, kind, _name(obj)

    return sorted(objects, key=sort_key)
