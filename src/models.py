"""
Resource models.

Typed views over the raw custom-object dictionaries returned by the API
server. The raw dictionary is kept alongside the parsed model so objects
can be written back without losing fields the controller does not know.
"""

import copy
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from semantic_version import Version

logger = logging.getLogger(__name__)

ADDON_GROUP = "garland.io"
ADDON_VERSION = "v1alpha1"
ADDON_API_VERSION = f"{ADDON_GROUP}/{ADDON_VERSION}"
ADDON_MANIFEST_PLURAL = "addonmanifests"
ADDON_INSTANCE_PLURAL = "addoninstances"

GARDEN_GROUP = "garden.sapcloud.io"
GARDEN_VERSION = "v1beta1"
GARDEN_API_VERSION = f"{GARDEN_GROUP}/{GARDEN_VERSION}"
SHOOT_PLURAL = "shoots"
SEED_PLURAL = "seeds"

# Finalizer marking that cleanup of an instance's objects is owed
FINALIZER = "garland"

# Shoot annotation listing the desired addon base names as a JSON array
ADDON_ANNOTATION = "garland.io/addons"

# Manifest names look like "<name>-<major>.<minor>.<patch>[-<prerelease>]"
VERSION_NAME_PATTERN = re.compile(r"^(.*)-(\d+\.\d+\.\d+(-.*)*)$")


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ObjectMeta(_Model):
    """Subset of Kubernetes object metadata used by the controllers."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: Optional[str] = Field(None, alias="resourceVersion")
    deletion_timestamp: Optional[str] = Field(None, alias="deletionTimestamp")
    finalizers: List[str] = Field(default_factory=list)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[Dict[str, Any]] = Field(
        default_factory=list, alias="ownerReferences"
    )

    @field_validator("finalizers", "owner_references", mode="before")
    @classmethod
    def _null_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("annotations", mode="before")
    @classmethod
    def _null_map(cls, v: Any) -> Any:
        return {} if v is None else v


class _Resource(_Model):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    _raw: Dict[str, Any] = PrivateAttr(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]):
        """Parse a raw API object, keeping the raw dictionary."""
        model = cls.model_validate(obj)
        model._raw = obj
        return model

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the raw API object."""
        return copy.deepcopy(self._raw)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Cache/work-queue key: ``namespace/name`` or ``name``."""
        if self.metadata.namespace:
            return f"{self.metadata.namespace}/{self.metadata.name}"
        return self.metadata.name

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


class AddonManifestSpec(_Model):
    config_map: str = Field("", alias="configMap")
    config_map_template: str = Field("", alias="configMapTemplate")
    values: Dict[str, Any] = Field(default_factory=dict)
    dependencies: Dict[str, str] = Field(default_factory=dict)

    @field_validator("values", "dependencies", mode="before")
    @classmethod
    def _null_map(cls, v: Any) -> Any:
        return {} if v is None else v


class AddonManifest(_Resource):
    """A named, versioned, reusable addon definition."""

    spec: AddonManifestSpec = Field(default_factory=AddonManifestSpec)

    def name_and_version(self) -> Tuple[str, Optional[Version]]:
        """
        Split the resource name into base name and semantic version.

        Returns ``("", None)`` when the name does not follow the
        ``<name>-<semver>`` pattern and ``(name, None)`` when the version
        part is not a valid semantic version.
        """
        match = VERSION_NAME_PATTERN.match(self.metadata.name)
        if match is None:
            return "", None

        try:
            version = Version(match.group(2))
        except ValueError:
            logger.debug(f"Unparsable version in manifest name {self.metadata.name}")
            return match.group(1), None
        return match.group(1), version


class ManifestRef(_Model):
    namespace: str = ""
    name: str = ""
    version: str = ""


class Target(_Model):
    """Destination of an instance; an empty shoot means the local cluster."""

    shoot: str = ""

    @property
    def local(self) -> bool:
        return not self.shoot


class AddonInstanceSpec(_Model):
    target: Target = Field(default_factory=Target)
    manifest: ManifestRef = Field(default_factory=ManifestRef)
    values: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("values", mode="before")
    @classmethod
    def _null_map(cls, v: Any) -> Any:
        return {} if v is None else v


class AddonInstanceStatus(_Model):
    # Advisory only; the rendered manifest is authoritative
    objects: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("objects", mode="before")
    @classmethod
    def _null_list(cls, v: Any) -> Any:
        return [] if v is None else v


class AddonInstance(_Resource):
    """A binding of one manifest version to one target cluster."""

    spec: AddonInstanceSpec = Field(default_factory=AddonInstanceSpec)
    status: AddonInstanceStatus = Field(default_factory=AddonInstanceStatus)

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    def with_finalizers(self, finalizers: List[str]) -> Dict[str, Any]:
        """Return the raw object with its finalizer list replaced."""
        obj = self.to_dict()
        obj.setdefault("metadata", {})["finalizers"] = finalizers
        return obj


class ShootStatus(_Model):
    seed: str = ""
    technical_id: str = Field("", alias="technicalID")


class Shoot(_Resource):
    """The higher-level cluster resource addons are requested on."""

    status: ShootStatus = Field(default_factory=ShootStatus)

    @property
    def addon_annotation(self) -> Optional[str]:
        return self.metadata.annotations.get(ADDON_ANNOTATION)


class SecretRef(_Model):
    name: str = ""
    namespace: str = ""


class SeedSpec(_Model):
    secret_ref: SecretRef = Field(default_factory=SecretRef, alias="secretRef")


class Seed(_Resource):
    spec: SeedSpec = Field(default_factory=SeedSpec)
