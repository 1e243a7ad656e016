"""
Shared fixtures: a scripted runtime and a helper resolving YAML layers.
"""
import asyncio
import textwrap
from collections import defaultdict

import pytest

from cdr.MANAGERS.process_manager import ServiceRuntime
from cdr.PARSERS.compose_parser import ComposeParser
from cdr.RESOLVERS.layer_merger import ListStrategy
from cdr.RESOLVERS.stack_resolver import StackResolver


class FakeRuntime(ServiceRuntime):
    """
    In-memory runtime.

    :param healthy_after: service -> number of failing probes before probes pass.
    :param never_healthy: services whose probes always fail.
    :param exit_plan: service -> exit codes; each start pops one and exits with it.
    :param stop_delay: service -> seconds ``stop`` takes.
    """

    def __init__(self, healthy_after=None, never_healthy=(), exit_plan=None, stop_delay=None):
        self.healthy_after = dict(healthy_after or {})
        self.never_healthy = set(never_healthy)
        self.exit_plan = {k: list(v) for k, v in (exit_plan or {}).items()}
        self.stop_delay = dict(stop_delay or {})
        self.started = []
        self.stopped = []
        self.probes = defaultdict(int)
        self._exits = {}

    async def start(self, service):
        loop = asyncio.get_running_loop()
        self.started.append(service.name)
        self._exits[service.name] = loop.create_future()
        codes = self.exit_plan.get(service.name)
        if codes:
            loop.call_soon(self.exit, service.name, codes.pop(0))

    async def wait(self, service):
        return await self._exits[service.name]

    async def probe(self, service):
        self.probes[service.name] += 1
        if service.name in self.never_healthy:
            return False
        return self.probes[service.name] > self.healthy_after.get(service.name, 0)

    async def stop(self, service, timeout):
        delay = self.stop_delay.get(service.name)
        if delay:
            await asyncio.sleep(delay)
        self.stopped.append(service.name)
        self.exit(service.name, -15)
        return False

    def exit(self, name, code):
        future = self._exits.get(name)
        if future is not None and not future.done():
            future.set_result(code)


@pytest.fixture
def fake_runtime():
    """The FakeRuntime class, to be instantiated per test."""
    return FakeRuntime


@pytest.fixture
def resolve_yaml():
    """
    Resolves YAML documents as layers named layer0.yml, layer1.yml, ...
    """
    def _resolve(*documents, environment=None, list_strategy=ListStrategy.APPEND):
        parser = ComposeParser()
        layers = [parser.parse_from_string(textwrap.dedent(doc), origin=f"layer{rank}.yml", rank=rank)
                  for rank, doc in enumerate(documents)]
        return StackResolver(environment=environment, list_strategy=list_strategy).resolve_layers(layers)
    return _resolve
