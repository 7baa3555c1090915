"""
Manifest sources - turning an addon manifest into concrete objects.

A manifest points at a ConfigMap holding either plain resource files or a
templated bundle. Both are exposed through the same small interface:
``render(values)`` returns a mapping of file name to text, and
``objects(values)`` decodes those files into resource dictionaries.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from kubernetes_asyncio.client import ApiException, CoreV1Api

from errors import NotFoundError, RenderError
from models import AddonInstance, AddonManifest

logger = logging.getLogger(__name__)

# Values under this key are shared with every nested bundle
GLOBAL_KEY = "global"

TEMPLATE_SUFFIX = ".tmpl"


def coalesce_values(
    defaults: Mapping[str, Any], overrides: Mapping[str, Any]
) -> Dict[str, Any]:
    """
    Merge instance values over manifest defaults.

    Maps are merged key by key, recursively; scalars and lists in
    ``overrides`` replace the default outright. Neither input is modified.
    """
    result = copy.deepcopy(dict(defaults))
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = coalesce_values(current, value)
        else:
            result[key] = copy.deepcopy(value)

    if GLOBAL_KEY in result and not isinstance(result[GLOBAL_KEY], dict):
        raise RenderError(f"values key {GLOBAL_KEY!r} must be a map")
    return result


def decode_objects(text: str, source: str = "<string>") -> List[Dict[str, Any]]:
    """
    Split a multi-document YAML text into resource dictionaries.

    Empty documents are skipped.

    Raises:
        RenderError: If the text is not valid YAML or a document is not a map
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise RenderError(f"invalid YAML in {source}: {e}") from e

    objects = []
    for document in documents:
        if document is None:
            continue
        if not isinstance(document, dict):
            raise RenderError(
                f"document in {source} is a {type(document).__name__}, expected a map"
            )
        objects.append(document)
    return objects


def decode_files(files: Mapping[str, str]) -> List[Dict[str, Any]]:
    """Decode every file, in file name order, into one object list."""
    objects: List[Dict[str, Any]] = []
    for name in sorted(files):
        objects.extend(decode_objects(files[name], source=name))
    return objects


class Source(ABC):
    """A renderable bundle of resource files."""

    @abstractmethod
    def render(self, values: Mapping[str, Any]) -> Dict[str, str]:
        """Render the bundle with resolved values into file name -> text."""
        pass

    def objects(self, values: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return decode_files(self.render(values))


class PlainSource(Source):
    """Plain resource files; values are ignored."""

    def __init__(self, files: Mapping[str, str]):
        self.files = dict(files)

    def render(self, values: Mapping[str, Any]) -> Dict[str, str]:
        return dict(self.files)


class TemplateSource(Source):
    """
    Jinja2 templated bundle.

    Files ending in ``.tmpl`` are rendered; all other files are exposed to
    templates through ``Files``. Templates also see the coalesced
    ``Values`` and ``Chart.Name`` / ``Chart.Version``.
    """

    def __init__(
        self,
        files: Mapping[str, str],
        name: str,
        version: str,
        defaults: Optional[Mapping[str, Any]] = None,
    ):
        self.templates = {k: v for k, v in files.items() if k.endswith(TEMPLATE_SUFFIX)}
        self.files = {k: v for k, v in files.items() if not k.endswith(TEMPLATE_SUFFIX)}
        self.name = name
        self.version = version
        self.defaults = dict(defaults or {})
        self._env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)

    def render(self, values: Mapping[str, Any]) -> Dict[str, str]:
        context = {
            "Values": coalesce_values(self.defaults, values),
            "Chart": {"Name": self.name, "Version": self.version},
            "Files": self.files,
        }

        rendered = {}
        for file_name in sorted(self.templates):
            try:
                template = self._env.from_string(self.templates[file_name])
                rendered[file_name] = template.render(**context)
            except TemplateError as e:
                raise RenderError(f"failed to render {file_name}: {e}") from e
        return rendered


async def _read_config_map(
    core_api: CoreV1Api, namespace: str, name: str
) -> Dict[str, str]:
    try:
        config_map = await core_api.read_namespaced_config_map(name, namespace)
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(f"config map {namespace}/{name} not found") from e
        raise
    return dict(config_map.data or {})


async def resolve_source(core_api: CoreV1Api, manifest: AddonManifest) -> Source:
    """
    Load the source a manifest points at.

    Raises:
        NotFoundError: If the manifest names no source or the ConfigMap is missing
    """
    spec = manifest.spec

    if spec.config_map:
        files = await _read_config_map(core_api, manifest.namespace, spec.config_map)
        return PlainSource(files)

    if spec.config_map_template:
        files = await _read_config_map(
            core_api, manifest.namespace, spec.config_map_template
        )
        name, version = manifest.name_and_version()
        return TemplateSource(
            files,
            name=name,
            version=str(version) if version is not None else "",
            defaults=spec.values,
        )

    raise NotFoundError(f"no source for manifest {manifest.key}")


async def render_instance(
    core_api: CoreV1Api, manifest: AddonManifest, instance: AddonInstance
) -> List[Dict[str, Any]]:
    """Render the objects an instance of a manifest consists of."""
    source = await resolve_source(core_api, manifest)
    objects = source.objects(instance.spec.values)
    logger.debug(
        f"Rendered {len(objects)} objects from {manifest.key} for {instance.key}"
    )
    return objects
