"""Pytest configuration and fixtures."""

import json
from typing import Any, Dict, List, Optional

import pytest

from models import AddonInstance, AddonManifest, Shoot, ADDON_ANNOTATION, FINALIZER


class StaticInformer:
    """In-memory stand-in for an Informer with a fixed cache."""

    def __init__(self, objects: Optional[List[Any]] = None, synced: bool = True):
        self.objects = {obj.key: obj for obj in objects or []}
        self.synced = synced
        self.handlers = []

    def add_event_handler(self, on_add=None, on_update=None, on_delete=None):
        self.handlers.append((on_add, on_update, on_delete))

    def has_synced(self) -> bool:
        return self.synced

    def get(self, key: str):
        return self.objects.get(key)

    def list(self, namespace: Optional[str] = None):
        if namespace is None:
            return list(self.objects.values())
        return [o for o in self.objects.values() if o.namespace == namespace]


def make_manifest(
    name: str,
    namespace: str = "garden",
    config_map: str = "",
    values: Optional[Dict[str, Any]] = None,
) -> AddonManifest:
    return AddonManifest.from_dict(
        {
            "apiVersion": "garland.io/v1alpha1",
            "kind": "AddonManifest",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"configMap": config_map or f"{name}-files", "values": values},
        }
    )


def make_instance(
    name: str = "my-addon",
    namespace: str = "garden",
    manifest: str = "nginx",
    version: str = ">=1.0.0",
    finalizers: Optional[List[str]] = None,
    deleting: bool = False,
    shoot: str = "",
) -> AddonInstance:
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "resourceVersion": "42",
        "finalizers": [FINALIZER] if finalizers is None else finalizers,
    }
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return AddonInstance.from_dict(
        {
            "apiVersion": "garland.io/v1alpha1",
            "kind": "AddonInstance",
            "metadata": metadata,
            "spec": {
                "target": {"shoot": shoot},
                "manifest": {"namespace": namespace, "name": manifest, "version": version},
                "values": {},
            },
        }
    )


def make_shoot(
    name: str = "dev",
    namespace: str = "garden-core",
    addons: Optional[List[str]] = None,
    annotation: Optional[str] = None,
    seed: str = "aws-eu1",
    deleting: bool = False,
) -> Shoot:
    annotations = {}
    if annotation is not None:
        annotations[ADDON_ANNOTATION] = annotation
    elif addons is not None:
        annotations[ADDON_ANNOTATION] = json.dumps(addons)
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "uid": "shoot-uid",
        "annotations": annotations,
    }
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return Shoot.from_dict(
        {
            "apiVersion": "garden.sapcloud.io/v1beta1",
            "kind": "Shoot",
            "metadata": metadata,
            "status": {"seed": seed},
        }
    )


def make_object(kind: str, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    api_version = "apps/v1" if kind in ("Deployment", "DaemonSet", "StatefulSet") else "v1"
    return {"apiVersion": api_version, "kind": kind, "metadata": metadata}


@pytest.fixture
def nginx_manifests():
    """Three published versions of the nginx addon."""
    return [
        make_manifest("nginx-1.0.0"),
        make_manifest("nginx-1.2.0"),
        make_manifest("nginx-2.0.0"),
    ]


@pytest.fixture
def sample_objects():
    """Rendered objects of a small addon, in no particular order."""
    return [
        make_object("Deployment", "web", "addon"),
        make_object("Service", "web", "addon"),
        make_object("Namespace", "addon"),
        make_object("ConfigMap", "web-config", "addon"),
    ]
