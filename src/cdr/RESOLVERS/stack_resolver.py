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
Resolution pass: load -> merge -> interpolate -> type -> dependency graph.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from ..MODELS.layer import Layer
from ..MODELS.orchestration_config import EffectiveStack
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.service_parser import ServiceParser
from ..RUNNERS.dependency_resolver import DependencyGraph, DependencyResolver
from ..UTILS.string_interpolation import StackInterpolator
from .layer_merger import LayerMerger, ListStrategy

logger = logging.getLogger(__name__)


@dataclass
class ResolvedPlan:
    """Result of a successful resolution pass."""

    stack: EffectiveStack
    graph: DependencyGraph
    order: List[str] = field(default_factory=list)


class StackResolver:
    """
    Runs a full resolution pass over layered descriptor files.
    Any error aborts the whole pass; no partial stack is returned.
    """

    def __init__(self,
                 environment: Optional[Mapping[str, str]] = None,
                 list_strategy: ListStrategy = ListStrategy.APPEND):
        """
        :param environment: Variables available to ``${...}`` markers.
        :param list_strategy: How list fields combine across layers.
        """
        self.environment = dict(environment or {})
        self.parser = ComposeParser()
        self.merger = LayerMerger(list_strategy)
        self.service_parser = ServiceParser()
        self.dependency_resolver = DependencyResolver()

    def load(self, paths: Sequence[str]) -> List[Layer]:
        """Parses the descriptor files, in order."""
        return self.parser.load(paths)

    def resolve_layers(self, layers: Sequence[Layer]) -> ResolvedPlan:
        """
        Resolves already-loaded layers into a plan.
        """
        merged = self.merger.merge(layers)
        interpolated = StackInterpolator(self.environment).interpolate_stack(merged)
        stack = self.service_parser.build_stack(interpolated)
        if not stack.name and layers and os.path.exists(layers[0].origin):
            # Compose names the project after the directory of the first file
            directory = os.path.dirname(os.path.abspath(layers[0].origin))
            stack = stack.model_copy(update={"name": os.path.basename(directory).lower()})
        graph = self.dependency_resolver.build_graph(stack)
        order = graph.topological_order()
        logger.info("Resolved %d services from %d layers: %s",
                    len(stack.services), len(layers), ", ".join(order))
        return ResolvedPlan(stack=stack, graph=graph, order=order)

    def resolve(self, paths: Sequence[str]) -> ResolvedPlan:
        """
        Loads and resolves descriptor files.

        :param paths: Descriptor files, base first.
        :return: The effective stack, its dependency graph and the startup order.
        """
        return self.resolve_layers(self.load(paths))
