"""
Target Resolution - which cluster an instance's objects are applied to.

An instance either targets the local cluster (the one the controller runs
against) or a shoot cluster. Shoot credentials are reached through the
seed cluster hosting the shoot's control plane:

    shoot -> seed -> seed secret (local) -> seed client
          -> shoot secret (on the seed) -> shoot client

Every hop fails closed with its own error; nothing falls back to cached or
partial credentials.
"""

import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import yaml
from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    Configuration,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes_asyncio.dynamic import DynamicClient

from errors import (
    MalformedKubeConfigError,
    NoKubeConfigError,
    NoSeedError,
    NotFoundError,
    SecretNotFoundError,
)
from models import (
    GARDEN_GROUP,
    GARDEN_VERSION,
    SEED_PLURAL,
    SHOOT_PLURAL,
    AddonInstance,
    Seed,
    Shoot,
)

logger = logging.getLogger(__name__)

KUBECONFIG_KEY = "kubeconfig"

# Name of the secret in a shoot's technical namespace holding its kubeconfig
SHOOT_SECRET_NAME = "gardener"

DEFAULT_NAMESPACE = "default"


def compute_technical_id(shoot: Shoot) -> str:
    """Namespace on the seed that hosts a shoot's control plane."""
    if shoot.status.technical_id:
        return shoot.status.technical_id
    project = shoot.namespace
    if project.startswith("garden-"):
        project = project[len("garden-"):]
    return f"shoot--{project}--{shoot.name}"


def kubeconfig_from_secret(secret: Any) -> bytes:
    """
    Extract the kubeconfig from a secret.

    Raises:
        NoKubeConfigError: If the secret has no kubeconfig entry
        MalformedKubeConfigError: If the entry is not valid base64
    """
    data = secret.data or {}
    encoded = data.get(KUBECONFIG_KEY)
    if not encoded:
        name = f"{secret.metadata.namespace}/{secret.metadata.name}"
        raise NoKubeConfigError(f"no kube config found in secret {name}")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedKubeConfigError(f"kube config is not valid base64: {e}") from e


class ClientFactory:
    """Builds API clients from kubeconfig documents."""

    async def from_kubeconfig(self, kubeconfig: bytes) -> ApiClient:
        """
        Build an API client for a kubeconfig.

        Raises:
            MalformedKubeConfigError: If the document cannot be loaded
        """
        try:
            config_dict = yaml.safe_load(kubeconfig)
        except yaml.YAMLError as e:
            raise MalformedKubeConfigError(f"kube config is not valid YAML: {e}") from e
        if not isinstance(config_dict, dict):
            raise MalformedKubeConfigError("kube config is not a map")

        configuration = Configuration()
        try:
            await kube_config.load_kube_config_from_dict(
                config_dict, client_configuration=configuration
            )
        except kube_config.ConfigException as e:
            raise MalformedKubeConfigError(f"invalid kube config: {e}") from e

        return ApiClient(configuration=configuration)


class RESTMapper:
    """
    Discovery backed mapping of (apiVersion, kind) to API resources.

    Discovery runs lazily on first use and again after ``reset``.
    """

    def __init__(self, api_client: ApiClient):
        self.api_client = api_client
        self._client: Optional[DynamicClient] = None
        self._lock = asyncio.Lock()

    async def client(self) -> DynamicClient:
        async with self._lock:
            if self._client is None:
                self._client = await DynamicClient(self.api_client)
            return self._client

    async def resource_for(self, api_version: str, kind: str) -> Any:
        client = await self.client()
        return await client.resources.get(api_version=api_version, kind=kind)

    async def reset(self) -> None:
        """Drop discovered resources so newly registered kinds are found."""
        async with self._lock:
            if self._client is not None:
                await self._client.resources.invalidate_cache()


class DiscoveryRefresher:
    """Background task resetting a RESTMapper on a fixed interval."""

    def __init__(self, mapper: RESTMapper, interval: float = 60):
        self.mapper = mapper
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.mapper.reset()
                logger.debug("Refreshed discovery information")
            except Exception as e:
                logger.error(f"Error refreshing discovery information: {e}")


class ClusterTarget:
    """Create and delete arbitrary objects on one cluster."""

    def __init__(self, mapper: RESTMapper, name: str = "local"):
        self.mapper = mapper
        self.name = name

    async def _resource(self, obj: Dict[str, Any]):
        metadata = obj.get("metadata") or {}
        resource = await self.mapper.resource_for(obj.get("apiVersion"), obj.get("kind"))
        namespace = None
        if resource.namespaced:
            namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
        return resource, namespace, metadata.get("name")

    async def create(self, obj: Dict[str, Any]) -> bool:
        """Create an object; returns False if it already existed."""
        resource, namespace, name = await self._resource(obj)
        client = await self.mapper.client()
        try:
            await client.create(resource, body=obj, namespace=namespace)
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"{obj.get('kind')} {name} already exists on {self.name}")
                return False
            raise
        logger.info(f"Created {obj.get('kind')} {name} on {self.name}")
        return True

    async def delete(self, obj: Dict[str, Any]) -> bool:
        """Delete an object; returns False if it was already gone."""
        resource, namespace, name = await self._resource(obj)
        client = await self.mapper.client()
        try:
            await client.delete(resource, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{obj.get('kind')} {name} already gone from {self.name}")
                return False
            raise
        logger.info(f"Deleted {obj.get('kind')} {name} from {self.name}")
        return True


class TargetResolver:
    """Resolves the cluster an addon instance is applied to."""

    def __init__(
        self,
        api_client: ApiClient,
        mapper: RESTMapper,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.api_client = api_client
        self.mapper = mapper
        self.client_factory = client_factory or ClientFactory()
        self.core_api = CoreV1Api(api_client)
        self.custom_api = CustomObjectsApi(api_client)

    @asynccontextmanager
    async def resolve(self, instance: AddonInstance) -> AsyncIterator[ClusterTarget]:
        """
        Yield the target for an instance.

        Clients built for a remote target are closed on exit.
        """
        target = instance.spec.target
        if target.local:
            yield ClusterTarget(self.mapper, name="local")
            return

        clients: List[ApiClient] = []
        try:
            shoot_client = await self._shoot_client(
                instance.namespace, target.shoot, clients
            )
            # No mapper caching per shoot: every resolution re-discovers
            mapper = RESTMapper(shoot_client)
            await mapper.client()
            yield ClusterTarget(mapper, name=f"shoot {instance.namespace}/{target.shoot}")
        finally:
            for client in clients:
                await client.close()

    async def _shoot_client(
        self, namespace: str, name: str, clients: List[ApiClient]
    ) -> ApiClient:
        shoot = await self._get_shoot(namespace, name)
        if not shoot.status.seed:
            raise NoSeedError(f"shoot {shoot.key} is not yet associated to a seed")

        seed = await self._get_seed(shoot.status.seed)
        secret_ref = seed.spec.secret_ref
        seed_secret = await self._read_secret(
            self.core_api, secret_ref.namespace, secret_ref.name
        )
        seed_client = await self.client_factory.from_kubeconfig(
            kubeconfig_from_secret(seed_secret)
        )
        clients.append(seed_client)

        technical_id = compute_technical_id(shoot)
        shoot_secret = await self._read_secret(
            CoreV1Api(seed_client), technical_id, SHOOT_SECRET_NAME
        )
        shoot_client = await self.client_factory.from_kubeconfig(
            kubeconfig_from_secret(shoot_secret)
        )
        clients.append(shoot_client)
        return shoot_client

    async def _get_shoot(self, namespace: str, name: str) -> Shoot:
        try:
            obj = await self.custom_api.get_namespaced_custom_object(
                GARDEN_GROUP, GARDEN_VERSION, namespace, SHOOT_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"shoot {namespace}/{name} not found") from e
            raise
        return Shoot.from_dict(obj)

    async def _get_seed(self, name: str) -> Seed:
        try:
            obj = await self.custom_api.get_cluster_custom_object(
                GARDEN_GROUP, GARDEN_VERSION, SEED_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"seed {name} not found") from e
            raise
        return Seed.from_dict(obj)

    @staticmethod
    async def _read_secret(core_api: CoreV1Api, namespace: str, name: str) -> Any:
        try:
            return await core_api.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(f"secret {namespace}/{name} not found") from e
            raise
