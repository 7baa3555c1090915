"""
AddonInstance controller.

Installs the objects of an addon instance on its target cluster and removes
them again when the instance is deleted. Derived lifecycle:

    Pending  (no finalizer)        -> finalizer added once the manifest renders
    Active   (finalizer)           -> objects created on every sync
    Deleting (deletion timestamp)  -> objects deleted, then finalizer removed
    Gone                           -> garbage collected by the API server
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import ApiClient, ApiException, CoreV1Api, CustomObjectsApi

from config import ControllerConfig
from controller import Controller
from errors import AggregateError
from informer import Informer
from kind_sorter import InstallOrder, UninstallOrder, sort_objects
from manifests import select_manifest
from models import (
    ADDON_GROUP,
    ADDON_INSTANCE_PLURAL,
    ADDON_VERSION,
    FINALIZER,
    AddonInstance,
    AddonManifest,
)
from rendering import render_instance
from target import ClusterTarget, TargetResolver

logger = logging.getLogger(__name__)


def _describe(obj: Dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    name = metadata.get("name", "")
    if metadata.get("namespace"):
        name = f"{metadata['namespace']}/{name}"
    return f"{obj.get('kind')} {name}"


class InstanceController(Controller):
    """Reconciles AddonInstances against their target clusters."""

    name = "AddonInstances"

    def __init__(
        self,
        api_client: ApiClient,
        resolver: TargetResolver,
        instance_informer: Informer,
        manifest_informer: Informer,
        config: Optional[ControllerConfig] = None,
    ):
        super().__init__(config)
        self.resolver = resolver
        self.core_api = CoreV1Api(api_client)
        self.custom_api = CustomObjectsApi(api_client)
        self.instance_informer = instance_informer
        self.manifest_informer = manifest_informer

        instance_informer.add_event_handler(
            on_add=self.enqueue,
            on_update=lambda old, new: self.enqueue(new),
            on_delete=self.enqueue,
        )

    @property
    def informers(self) -> List[Informer]:
        return [self.instance_informer, self.manifest_informer]

    def get_object(self, key: str) -> Optional[AddonInstance]:
        return self.instance_informer.get(key)

    def find_manifest(self, instance: AddonInstance) -> AddonManifest:
        """Resolve the manifest an instance refers to, re-evaluated every sync."""
        ref = instance.spec.manifest
        namespace = ref.namespace or instance.namespace
        manifests = self.manifest_informer.list(namespace)
        return select_manifest(manifests, ref.name, ref.version)

    async def reconcile(self, instance: AddonInstance) -> None:
        if instance.deleting and not instance.has_finalizer:
            return

        try:
            manifest = self.find_manifest(instance)
        except Exception as e:
            logger.error(f"Could not find manifest for {instance.key}: {e}")
            raise

        try:
            objects = await render_instance(self.core_api, manifest, instance)
        except Exception as e:
            logger.error(f"Could not render manifest {manifest.key} for {instance.key}: {e}")
            raise

        if instance.deleting:
            async with self.resolver.resolve(instance) as target:
                await self.delete_objects(target, objects)
            await self.remove_finalizer(instance)
            logger.info(f"Successfully cleaned up {manifest.name} for {instance.key}")
            return

        # Cleanup is only owed once the object set is known
        if not instance.has_finalizer:
            instance = await self.add_finalizer(instance)

        async with self.resolver.resolve(instance) as target:
            await self.ensure_objects(target, objects)

    async def ensure_objects(
        self, target: ClusterTarget, objects: List[Dict[str, Any]]
    ) -> None:
        """
        Create every object in install order.

        Existing objects count as success. Failures do not stop the
        remaining objects and are raised together as an AggregateError.
        """
        errors = []
        for obj in sort_objects(objects, InstallOrder):
            try:
                await target.create(obj)
            except Exception as e:
                logger.error(f"Could not create {_describe(obj)} on {target.name}: {e}")
                errors.append(e)

        error = AggregateError.from_errors(errors)
        if error is not None:
            raise error

    async def delete_objects(
        self, target: ClusterTarget, objects: List[Dict[str, Any]]
    ) -> None:
        """Delete every object in uninstall order; missing objects count as success."""
        errors = []
        for obj in sort_objects(objects, UninstallOrder):
            try:
                await target.delete(obj)
            except Exception as e:
                logger.error(f"Could not delete {_describe(obj)} from {target.name}: {e}")
                errors.append(e)

        error = AggregateError.from_errors(errors)
        if error is not None:
            raise error

    async def _replace(self, instance: AddonInstance, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.custom_api.replace_namespaced_custom_object(
            ADDON_GROUP,
            ADDON_VERSION,
            instance.namespace,
            ADDON_INSTANCE_PLURAL,
            instance.name,
            body,
        )

    async def add_finalizer(self, instance: AddonInstance) -> AddonInstance:
        finalizers = instance.metadata.finalizers + [FINALIZER]
        updated = await self._replace(instance, instance.with_finalizers(finalizers))
        logger.info(f"Added finalizer to {instance.key}")
        return AddonInstance.from_dict(updated)

    async def remove_finalizer(self, instance: AddonInstance) -> None:
        finalizers = [f for f in instance.metadata.finalizers if f != FINALIZER]
        try:
            await self._replace(instance, instance.with_finalizers(finalizers))
        except ApiException as e:
            if e.status == 404:
                return
            logger.error(f"Could not remove finalizer from {instance.key}: {e}")
            raise
