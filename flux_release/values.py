"""Module for composing the values a HelmRelease is deployed with."""

from abc import ABC, abstractmethod
import base64
from collections.abc import Iterable
import copy
import logging
import re
from typing import Any, TypeVar

import yaml

from .exceptions import InputException, InvalidValuesReference
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    ConfigMap,
    HelmRelease,
    Secret,
    ValuesReference,
)
from .store import Store

__all__ = [
    "ValuesComposer",
    "StoreValuesComposer",
]

_LOGGER = logging.getLogger(__name__)


_T = TypeVar("_T", bound=ConfigMap | Secret)


class ValuesComposer(ABC):
    """Composes the final values of a HelmRelease."""

    @abstractmethod
    async def compose(self, release: HelmRelease) -> dict[str, Any]:
        """Return the merged values, deterministic for identical inputs."""


def _find_object(name: str, namespace: str, objects: Iterable[_T]) -> _T | None:
    """Find the object in the list of objects."""
    for obj in objects:
        if obj.name == name and obj.namespace == namespace:
            return obj
    return None


def _decode_secret_data(
    name: str, string_data: dict[str, str] | None, data: dict[str, str] | None
) -> dict[str, str] | None:
    """Return the secret data, stringData taking precedence like the API server."""
    if data is None and string_data is None:
        return None
    result: dict[str, str] = {}
    try:
        for k, v in (data or {}).items():
            result[k] = base64.b64decode(v).decode("utf-8")
    except ValueError as err:
        raise InvalidValuesReference(
            f"Unable to decode data for secret {name}"
        ) from err
    result.update(string_data or {})
    return result


def _decode_config_map_data(
    name: str, data: dict[str, str] | None, binary_data: dict[str, str] | None
) -> dict[str, str] | None:
    if data is None and binary_data is None:
        return None
    result: dict[str, str] = dict(data or {})
    try:
        for k, v in (binary_data or {}).items():
            result[k] = base64.b64decode(v).decode("utf-8")
    except ValueError as err:
        raise InvalidValuesReference(
            f"Unable to decode binary data for configmap {name}"
        ) from err
    return result


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries the way Helm merges values.

    Lists are replaced entirely.
    """
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if (
            base_value is not None
            and isinstance(base_value, dict)
            and isinstance(override_value, dict)
        ):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def _merge_reference_value(
    ref: ValuesReference,
    found_value: str,
    values: dict[str, Any],
) -> dict[str, Any]:
    """Merge the value of a reference into the values."""
    if ref.target_path:
        raw_parts = re.split(r"(?<!\\)\.", ref.target_path)
        parts = [re.sub(r"\\(.)", r"\1", raw_part) for raw_part in raw_parts]

        inner_values = values
        for part in parts[:-1]:
            if part not in inner_values:
                inner_values[part] = {}
            elif not isinstance(inner_values[part], dict):
                raise InputException(
                    f"Expected '{ref.name}' field '{ref.target_path}' values to be a dict, found {type(inner_values[part])}"
                )
            inner_values = inner_values[part]

        inner_values[parts[-1]] = found_value
        return values

    try:
        obj = yaml.load(found_value, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise InputException(
            f"Expected '{ref.name}' key '{ref.values_key}' to be valid yaml: {err}"
        ) from err
    # Handle empty YAML file case
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise InputException(
            f"Expected '{ref.name}' key '{ref.values_key}' values to be a dict, found {type(obj)}"
        )
    return _deep_merge(values, obj)


class StoreValuesComposer(ValuesComposer):
    """Composes values from inline values and ConfigMaps/Secrets in a Store.

    References are applied in order, inline values are merged last and take
    precedence.
    """

    def __init__(self, store: Store) -> None:
        """Initialize StoreValuesComposer."""
        self._store = store

    def _lookup(self, ref: ValuesReference, namespace: str) -> dict[str, str] | None:
        if ref.kind == SECRET_KIND:
            secret = _find_object(
                ref.name,
                namespace,
                (
                    obj
                    for obj in self._store.list_objects(SECRET_KIND)
                    if isinstance(obj, Secret)
                ),
            )
            if secret is None:
                return None
            return _decode_secret_data(
                f"{namespace}/{ref.name}", secret.string_data, secret.data
            )
        if ref.kind == CONFIG_MAP_KIND:
            config_map = _find_object(
                ref.name,
                namespace,
                (
                    obj
                    for obj in self._store.list_objects(CONFIG_MAP_KIND)
                    if isinstance(obj, ConfigMap)
                ),
            )
            if config_map is None:
                return None
            return _decode_config_map_data(
                f"{namespace}/{ref.name}", config_map.data, config_map.binary_data
            )
        raise InvalidValuesReference(f"Unsupported valuesFrom kind {ref.kind}")

    async def compose(self, release: HelmRelease) -> dict[str, Any]:
        """Return the merged values of the HelmRelease."""
        values: dict[str, Any] = {}
        for ref in release.values_from or ():
            _LOGGER.debug("Expanding value reference %s", ref)
            found_data = self._lookup(ref, release.namespace)
            if found_data is None:
                if ref.optional:
                    _LOGGER.debug(
                        "Skipping optional %s %s/%s",
                        ref.kind,
                        release.namespace,
                        ref.name,
                    )
                    continue
                raise InvalidValuesReference(
                    f"Unable to find {ref.kind} {release.namespace}/{ref.name} "
                    f"referenced by HelmRelease {release.namespaced_name}"
                )
            if (found_value := found_data.get(ref.values_key)) is None:
                if ref.optional:
                    continue
                raise InvalidValuesReference(
                    f"Unable to find key {ref.values_key} in {release.namespace}/{ref.name}"
                )
            try:
                values = _merge_reference_value(ref, found_value, values)
            except InputException as err:
                raise InvalidValuesReference(
                    f"Error composing values of HelmRelease '{release.namespaced_name}': {err}"
                ) from err

        if release.values:
            values = _deep_merge(values, copy.deepcopy(release.values))
        return values
