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
Loader for layered Docker Compose YAML files.
"""
import logging
import os
from typing import Any, Dict, List, Sequence

import yaml

from ..MODELS.layer import Layer, Override, Reset
from ..exceptions import NotFoundError, ParseError

logger = logging.getLogger(__name__)


class _LayerLoader(yaml.SafeLoader):
    """
    Safe YAML loader that understands the ``!override`` and ``!reset`` tags.
    """


def _construct_override(loader: yaml.SafeLoader, node: yaml.Node) -> Override:
    if isinstance(node, yaml.SequenceNode):
        return Override(loader.construct_sequence(node, deep=True))
    if isinstance(node, yaml.MappingNode):
        return Override(loader.construct_mapping(node, deep=True))
    # Re-resolve the plain scalar so `!override 8080` stays an int
    tag = loader.resolve(yaml.ScalarNode, node.value, (True, False))
    return Override(loader.construct_object(yaml.ScalarNode(tag, node.value)))


def _construct_reset(loader: yaml.SafeLoader, node: yaml.Node) -> Reset:
    return Reset()


_LayerLoader.add_constructor("!override", _construct_override)
_LayerLoader.add_constructor("!reset", _construct_reset)


class ComposeParser:
    """
    Parser turning docker-compose.yml files into raw, ordered layers.
    Parsing is pure: nothing is interpolated or merged here.
    """

    def load(self, compose_paths: Sequence[str]) -> List[Layer]:
        """
        Parses several compose files in precedence order.

        :param compose_paths: Paths, base file first.
        :return: One layer per file, ranked by position.
        :raises NotFoundError: If no path is given or a file is missing.
        :raises ParseError: If a file is malformed.
        """
        if not compose_paths:
            raise NotFoundError("no descriptor files given")
        return [self.parse(path, rank=rank) for rank, path in enumerate(compose_paths)]

    def parse(self, compose_path: str, rank: int = 0) -> Layer:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :param rank: Precedence rank of the file.
        :return: Parsed layer.
        """
        if not os.path.isfile(compose_path):
            raise NotFoundError("file not found", origin=compose_path)
        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, origin=compose_path, rank=rank)

    def parse_from_string(self, content: str, origin: str = "<string>", rank: int = 0) -> Layer:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param origin: Name reported in diagnostics.
        :param rank: Precedence rank of the file.
        :return: Parsed layer.
        """
        try:
            data = yaml.load(content, Loader=_LayerLoader)
        except (yaml.YAMLError, ValueError) as e:
            raise ParseError(f"invalid YAML: {e}", origin=origin) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError("top level must be a mapping", origin=origin)

        services = {}
        for name, raw in self._section(data, 'services', origin).items():
            if raw is None:
                raw = {}
            if not isinstance(raw, dict):
                raise ParseError("service definition must be a mapping", origin=origin, service=str(name))
            services[name] = raw

        project_name = data.get('name')
        if project_name is not None and not isinstance(project_name, str):
            raise ParseError("'name' must be a string", origin=origin)

        logger.debug("Loaded %s (rank %d) with %d services", origin, rank, len(services))
        return Layer(
            origin=origin,
            rank=rank,
            name=project_name,
            services=services,
            networks=self._declarations(data, 'networks', origin),
            volumes=self._declarations(data, 'volumes', origin),
        )

    def _section(self, data: Dict[Any, Any], key: str, origin: str) -> Dict[str, Any]:
        """
        Returns a top-level mapping section, checking its shape.
        """
        section = data.get(key)
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ParseError(f"'{key}' must be a mapping", origin=origin)
        for name in section:
            if not isinstance(name, str):
                raise ParseError(f"'{key}' keys must be strings, got {name!r}", origin=origin)
        return section

    def _declarations(self, data: Dict[Any, Any], key: str, origin: str) -> Dict[str, Any]:
        """
        Top-level networks/volumes; a bare name declares one with default options.
        """
        return {name: ({} if raw is None else raw)
                for name, raw in self._section(data, key, origin).items()}
