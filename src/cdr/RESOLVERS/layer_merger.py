# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Merge engine folding ordered descriptor layers into a single stack.

Field rules:

* scalars (image, restart, command, ...): last non-null value wins
* top-level service lists (ports, volumes, ...): appended, or replaced
  when the merger runs with ``ListStrategy.REPLACE``
* maps (environment, labels, healthcheck, depends_on, ...): key-wise
  union, later value wins, nested maps merged recursively; lists nested
  inside maps are replaced
* ``!override`` replaces a value wholesale, ``!reset`` drops it
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..MODELS.layer import Layer, Override, Reset
from ..MODELS.orchestration_config import MergedStack
from ..exceptions import MergeConflictError, ParseError

logger = logging.getLogger(__name__)

# Fields replaced wholesale even when both sides are collections.
SCALAR_FIELDS = frozenset({
    "image", "restart", "command", "entrypoint", "working_dir", "user",
    "hostname", "container_name", "cpus", "mem_limit", "platform",
    "pull_policy", "stop_signal", "stop_grace_period", "init", "tty",
})

# Fields accepting both a mapping and a ``KEY=VALUE`` list.
KEY_VALUE_FIELDS = frozenset({"environment", "labels"})

# Fields accepting both a single string and a list of strings.
STRING_LIST_FIELDS = frozenset({"env_file", "dns", "dns_search"})


class ListStrategy(str, Enum):
    """
    How list-valued service fields combine across layers.
    """
    APPEND = "append"
    REPLACE = "replace"


def _strip(value: Any) -> Any:
    """
    Copies a raw value, unwrapping ``!override`` markers and dropping ``!reset`` entries.
    """
    if isinstance(value, Override):
        return _strip(value.value)
    if isinstance(value, dict):
        return {k: _strip(v) for k, v in value.items() if not isinstance(v, Reset)}
    if isinstance(value, list):
        return [_strip(v) for v in value if not isinstance(v, Reset)]
    return value


def _type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "mapping"
    if isinstance(value, list):
        return "list"
    return "scalar"


def normalize_field(field: str, value: Any, service: str, origin: str) -> Any:
    """
    Brings the alternative short forms Compose allows for a field into one
    canonical shape, so that equivalent spellings merge instead of conflicting.
    """
    if isinstance(value, Override):
        return Override(normalize_field(field, value.value, service, origin))
    if isinstance(value, Reset) or value is None:
        return value

    if field in KEY_VALUE_FIELDS and isinstance(value, list):
        mapping: Dict[str, Optional[str]] = {}
        for entry in value:
            if not isinstance(entry, str):
                raise ParseError(f"'{field}' entries must be KEY=VALUE strings, got {entry!r}",
                                 origin=origin, service=service)
            if '=' in entry:
                key, val = entry.split('=', 1)
                mapping[key] = val
            else:
                mapping[entry] = None
        return mapping

    if field == "depends_on" and isinstance(value, list):
        deps = {}
        for entry in value:
            if not isinstance(entry, str):
                raise ParseError(f"'depends_on' entries must be service names, got {entry!r}",
                                 origin=origin, service=service)
            deps[entry] = {"condition": "service_started"}
        return deps

    if field == "networks" and isinstance(value, list):
        return {net: {} for net in value}

    if field == "build" and isinstance(value, str):
        return {"context": value}

    if field in STRING_LIST_FIELDS and isinstance(value, str):
        return [value]

    return value


class LayerMerger:
    """
    Folds layers left to right into a ``MergedStack``.
    """

    def __init__(self, list_strategy: ListStrategy = ListStrategy.APPEND):
        """
        :param list_strategy: Policy for list-valued service fields.
        """
        self.list_strategy = ListStrategy(list_strategy)

    def merge(self, layers: Sequence[Layer]) -> MergedStack:
        """
        Merges layers in the order given.

        :param layers: Layers, base first.
        :return: The merged, still uninterpolated stack.
        :raises MergeConflictError: If two layers disagree on a field's shape.
        """
        services: Dict[str, Dict[str, Any]] = {}
        provenance: Dict[str, Dict[str, str]] = {}
        networks: Dict[str, Any] = {}
        volumes: Dict[str, Any] = {}
        top_origins: Dict[str, str] = {}
        name = None

        for layer in layers:
            if layer.name:
                name = layer.name

            for svc_name, patch in layer.services.items():
                target = services.setdefault(svc_name, {})
                fields = provenance.setdefault(svc_name, {})
                fields[""] = layer.origin
                for field, raw in patch.items():
                    value = normalize_field(field, raw, svc_name, layer.origin)
                    self._merge_field(target, fields, svc_name, field, value, layer.origin)

            networks = self._merge_top_level(networks, layer.networks, "networks", top_origins, layer.origin)
            volumes = self._merge_top_level(volumes, layer.volumes, "volumes", top_origins, layer.origin)

        logger.debug("Merged %d layers into %d services", len(layers), len(services))
        return MergedStack(
            name=name,
            services=services,
            networks=networks,
            volumes=volumes,
            origins=[layer.origin for layer in layers],
            provenance=provenance,
        )

    def _merge_field(self, target: Dict[str, Any], fields: Dict[str, str], service: str,
                     field: str, value: Any, origin: str):
        """
        Merges one service field from a layer into the accumulated service.
        """
        if isinstance(value, Reset):
            target.pop(field, None)
            fields[field] = origin
            return
        if isinstance(value, Override):
            target[field] = _strip(value)
            fields[field] = origin
            return
        if value is None:
            return
        if field not in target or field in SCALAR_FIELDS:
            target[field] = _strip(value)
        else:
            target[field] = self._merge_value(target[field], value, field, service,
                                              fields[field], origin, nested=False)
        fields[field] = origin

    def _merge_value(self, current: Any, new: Any, path: str, service: Optional[str],
                     first_origin: str, origin: str, nested: bool) -> Any:
        """
        Recursively merges two raw values of the same field.
        """
        if isinstance(current, dict) and isinstance(new, dict):
            result = dict(current)
            for key, val in new.items():
                if isinstance(val, Reset):
                    result.pop(key, None)
                elif isinstance(val, Override):
                    result[key] = _strip(val)
                elif val is None and key in result:
                    continue
                elif key in result and result[key] is not None:
                    result[key] = self._merge_value(result[key], val, f"{path}.{key}", service,
                                                    first_origin, origin, nested=True)
                else:
                    result[key] = _strip(val)
            return result

        if isinstance(current, list) and isinstance(new, list):
            if nested or self.list_strategy == ListStrategy.REPLACE:
                return _strip(new)
            result = list(current)
            for item in _strip(new):
                if item not in result:
                    result.append(item)
            return result

        if isinstance(current, (dict, list)) or isinstance(new, (dict, list)):
            raise MergeConflictError(service, path, first_origin, origin,
                                     detail=f"{_type_name(current)} vs {_type_name(new)}")
        return new

    def _merge_top_level(self, current: Dict[str, Any], new: Dict[str, Any], section: str,
                         origins: Dict[str, str], origin: str) -> Dict[str, Any]:
        """
        Merges top-level networks or volumes declarations.
        """
        if not new:
            return current
        merged = self._merge_value(current, new, section, None,
                                   origins.get(section, origin), origin, nested=True)
        origins[section] = origin
        return merged
