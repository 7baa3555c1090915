"""
Shoot controller.

Turns the addon list annotated on a shoot into AddonInstances, one per
addon, owned by the shoot so they are garbage collected with it.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import ApiClient, ApiException, CustomObjectsApi

from config import ControllerConfig
from controller import Controller
from errors import AggregateError
from informer import Informer
from manifests import ANY_VERSION, select_manifest
from models import (
    ADDON_API_VERSION,
    ADDON_GROUP,
    ADDON_INSTANCE_PLURAL,
    ADDON_VERSION,
    FINALIZER,
    GARDEN_API_VERSION,
    AddonManifest,
    Shoot,
)
from validation import parse_addon_annotation

logger = logging.getLogger(__name__)


def is_target_shoot(obj: Any) -> bool:
    """Only shoots carrying the addon annotation are of interest."""
    return isinstance(obj, Shoot) and obj.addon_annotation is not None


def addon_instance_name(shoot: Shoot, manifest: AddonManifest) -> str:
    name, _ = manifest.name_and_version()
    return f"{shoot.name}-{name}"


def build_addon_instance(shoot: Shoot, manifest: AddonManifest) -> Dict[str, Any]:
    """AddonInstance binding the exact version of ``manifest`` to ``shoot``."""
    name, version = manifest.name_and_version()
    return {
        "apiVersion": ADDON_API_VERSION,
        "kind": "AddonInstance",
        "metadata": {
            "namespace": shoot.namespace,
            "name": addon_instance_name(shoot, manifest),
            "ownerReferences": [
                {
                    "apiVersion": GARDEN_API_VERSION,
                    "kind": "Shoot",
                    "name": shoot.name,
                    "uid": shoot.metadata.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
            "finalizers": [FINALIZER],
        },
        "spec": {
            "manifest": {
                "namespace": manifest.namespace,
                "name": name,
                "version": str(version),
            },
            "target": {"shoot": shoot.name},
        },
    }


class ShootController(Controller):
    """Ensures an AddonInstance exists for every addon a shoot asks for."""

    name = "Shoots"

    def __init__(
        self,
        api_client: ApiClient,
        shoot_informer: Informer,
        manifest_informer: Informer,
        config: Optional[ControllerConfig] = None,
    ):
        super().__init__(config)
        self.custom_api = CustomObjectsApi(api_client)
        self.shoot_informer = shoot_informer
        self.manifest_informer = manifest_informer

        shoot_informer.add_event_handler(
            on_add=self._shoot_add,
            on_update=lambda old, new: self._shoot_add(new),
            on_delete=self._shoot_add,
        )

    def _shoot_add(self, obj: Any) -> None:
        if is_target_shoot(obj):
            self.enqueue(obj)

    @property
    def informers(self) -> List[Informer]:
        return [self.shoot_informer, self.manifest_informer]

    def get_object(self, key: str) -> Optional[Shoot]:
        return self.shoot_informer.get(key)

    async def reconcile(self, shoot: Shoot) -> None:
        # Owned instances of a deleted shoot are reaped via owner references
        if shoot.deleting:
            return

        try:
            addon_names = parse_addon_annotation(shoot.addon_annotation)
        except Exception as e:
            logger.error(f"Could not read addons of shoot {shoot.key}: {e}")
            raise

        manifests = self.manifest_informer.list()

        errors: List[Exception] = []
        for addon_name in addon_names:
            try:
                manifest = select_manifest(manifests, addon_name, ANY_VERSION)
                await self.ensure_addon(shoot, manifest)
            except Exception as e:
                logger.error(f"Could not ensure addon {addon_name} for shoot {shoot.key}: {e}")
                errors.append(e)

        error = AggregateError.from_errors(errors)
        if error is not None:
            raise error

    async def ensure_addon(self, shoot: Shoot, manifest: AddonManifest) -> bool:
        """Create the AddonInstance; returns False if it already existed."""
        body = build_addon_instance(shoot, manifest)
        try:
            await self.custom_api.create_namespaced_custom_object(
                ADDON_GROUP, ADDON_VERSION, shoot.namespace, ADDON_INSTANCE_PLURAL, body
            )
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        logger.info(f"Created addon instance {shoot.namespace}/{body['metadata']['name']}")
        return True
