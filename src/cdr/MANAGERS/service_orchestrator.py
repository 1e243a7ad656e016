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
Startup sequencing for multiple services, gated on dependencies and health.

Each service is driven by its own asyncio task:

    pending -> waiting_for_deps -> starting -> healthy -> running
            -> stopping -> stopped

with ``unhealthy`` reachable from starting/running. A service enters
``starting`` only while every ``healthy`` dependency is healthy and every
``started`` dependency has been started; the check and the transition happen
under the same condition lock, so no dependent can slip past a dependency.
"""
import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, TryAgain, retry_never, stop_after_attempt, stop_never, wait_exponential

from ..MODELS.lifecycle import HealthStatus, LifecycleState, ServiceHealth, ServiceStatus
from ..MODELS.orchestration_config import EffectiveStack, SequencerConfig
from ..MODELS.service_definition import (
    DependencyCondition,
    RestartPolicyCondition,
    ServiceDefinition,
)
from ..RUNNERS.dependency_resolver import DependencyGraph, DependencyResolver
from ..exceptions import NotFoundError, StartupTimeoutError
from .health_monitor import HealthMonitor
from .process_manager import ProcessRuntime, ServiceRuntime

logger = logging.getLogger(__name__)

_ACTIVE = frozenset({
    LifecycleState.STARTING, LifecycleState.HEALTHY,
    LifecycleState.RUNNING, LifecycleState.UNHEALTHY,
})
_IDLE = frozenset({
    LifecycleState.PENDING, LifecycleState.WAITING_FOR_DEPS, LifecycleState.STOPPED,
})
_DEFAULT = object()


@dataclass
class RunOutcome:
    """How one instance of a service ended."""

    exit_code: Optional[int]
    reason: str
    requeue: bool


@dataclass
class StartupReport:
    """Result of a successful ``up``."""

    order: List[str]
    restarts: Dict[str, int] = field(default_factory=dict)


@dataclass
class ShutdownReport:
    """Result of ``down``; forced stops are reported as warnings."""

    order: List[str]
    warnings: List[str] = field(default_factory=list)


def should_requeue(condition: RestartPolicyCondition, exit_code: Optional[int]) -> bool:
    """
    Applies a restart policy to a terminated instance. A None exit code
    means abnormal termination (unhealthy, or failed to start).
    """
    if condition in (RestartPolicyCondition.ALWAYS, RestartPolicyCondition.UNLESS_STOPPED):
        return True
    if condition == RestartPolicyCondition.ON_FAILURE:
        return exit_code is None or exit_code != 0
    return False


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies and health.
    """

    def __init__(self,
                 stack: EffectiveStack,
                 graph: Optional[DependencyGraph] = None,
                 runtime: Optional[ServiceRuntime] = None,
                 config: Optional[SequencerConfig] = None):
        """
        Initializes the orchestrator.

        :param stack: The effective stack; shared read-only by all service tasks.
        :param graph: Its dependency graph; built from the stack when omitted.
        :param runtime: Backend that runs instances; local processes by default.
        :param config: Timeouts and restart backoff.
        """
        self.stack = stack
        self.graph = graph or DependencyResolver().build_graph(stack)
        self.runtime = runtime or ProcessRuntime()
        self.config = config or SequencerConfig()
        self.order = self.graph.topological_order()

        self._status: Dict[str, ServiceStatus] = {name: ServiceStatus() for name in self.graph.nodes}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._changed: Optional[asyncio.Condition] = None
        self._shutting_down = False

        self.history: List[Tuple[str, LifecycleState]] = []
        self.stop_order: List[str] = []
        self.warnings: List[str] = []

    # Public API

    async def up(self, timeout=_DEFAULT) -> StartupReport:
        """
        Starts all services and waits until every one of them is ready.

        :param timeout: Seconds to wait; defaults to ``config.startup_timeout``,
            None waits forever.
        :return: The startup report.
        :raises StartupTimeoutError: Naming every unready service and what it waits on.
        """
        if timeout is _DEFAULT:
            timeout = self.config.startup_timeout
        changed = self._condition()
        logger.info("Starting services in order: %s", ", ".join(self.order))

        for name in self.order:
            if name not in self._tasks:
                task = asyncio.create_task(self._supervise(name), name=f"cdr:{name}")
                task.add_done_callback(functools.partial(self._supervisor_done, name))
                self._tasks[name] = task

        async def all_ready():
            async with changed:
                await changed.wait_for(lambda: all(self._is_ready(n) for n in self.order))

        try:
            await asyncio.wait_for(all_ready(), timeout=timeout)
        except asyncio.TimeoutError:
            blocked = {name: self.unmet_dependencies(name) for name in self.order if not self._is_ready(name)}
            states = {name: self._status[name].state.value for name in blocked}
            error = StartupTimeoutError(timeout, blocked, states)
            logger.error("%s", error)
            raise error from None

        logger.info("All services ready")
        return StartupReport(order=list(self.order),
                             restarts={n: s.restart_count for n, s in self._status.items()})

    async def down(self, grace: Optional[float] = None) -> ShutdownReport:
        """
        Stops all services in reverse dependency order. A service is stopped
        once all of its dependents have stopped, or when the grace period
        runs out, in which case the forced stop is recorded as a warning.

        :param grace: Seconds to wait for dependents; defaults to ``config.shutdown_grace``.
        """
        grace = self.config.shutdown_grace if grace is None else grace
        self._shutting_down = True
        self._condition()
        await self._notify()

        await asyncio.gather(*(self._stop_service(name, grace) for name in self.order))

        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        return ShutdownReport(order=list(self.stop_order), warnings=list(self.warnings))

    def status(self, name: str) -> ServiceStatus:
        """Current status of a service."""
        return self._status[name]

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their lifecycle/health states.
        """
        result = {}
        for name in self.order:
            st = self._status[name]
            result[name] = f"{st.state.value} ({st.health.status.value})"
        return result

    def unmet_dependencies(self, name: str) -> List[str]:
        """Dependencies of ``name`` whose edge condition is not satisfied."""
        unmet = []
        for dep, condition in sorted(self.graph.dependencies(name).items()):
            st = self._status[dep]
            if condition == DependencyCondition.HEALTHY and not st.is_healthy:
                unmet.append(dep)
            elif condition == DependencyCondition.STARTED and not st.ever_started:
                unmet.append(dep)
        return unmet

    # Service tasks

    async def _supervise(self, name: str):
        """
        Runs instances of one service, requeueing them according to the
        restart policy with exponential backoff.
        """
        svc = self.stack.services[name]
        policy = svc.restart_policy
        status = self._status[name]

        def before_requeue(retry_state):
            status.restart_count += 1
            logger.warning("[%s] Requeueing in %.2fs (restart %d)", name,
                           retry_state.next_action.sleep, status.restart_count)

        retrying = AsyncRetrying(
            retry=retry_never,
            wait=wait_exponential(multiplier=self.config.restart_delay, max=self.config.max_restart_delay),
            stop=stop_after_attempt(policy.max_retries + 1) if policy.max_retries else stop_never,
            before_sleep=before_requeue,
            # Out of restarts: leave the loop and report below
            retry_error_callback=lambda retry_state: None,
        )
        outcome = None
        async for attempt in retrying:
            with attempt:
                outcome = await self._run_once(svc, status)
                if outcome.requeue and not self._shutting_down:
                    raise TryAgain

        if not self._shutting_down:
            status.terminal = True
            if outcome is not None and outcome.requeue:
                logger.error("[%s] Exceeded max restart attempts (%d)", name, policy.max_retries)
            await self._notify()

    async def _run_once(self, svc: ServiceDefinition, status: ServiceStatus) -> RunOutcome:
        """
        Runs one instance of a service from pending to stopped.
        """
        name = svc.name
        changed = self._condition()
        await self._transition(name, LifecycleState.PENDING)
        await self._transition(name, LifecycleState.WAITING_FOR_DEPS)

        async with changed:
            await changed.wait_for(lambda: self._shutting_down or not self.unmet_dependencies(name))
            if self._shutting_down:
                return RunOutcome(None, "shutdown", requeue=False)
            status.health = ServiceHealth(status=HealthStatus.STARTING)
            status.ever_started = True
            self._set_state(name, LifecycleState.STARTING)
            changed.notify_all()

        try:
            await self.runtime.start(svc)
        except (OSError, NotFoundError) as e:
            logger.error("[%s] Failed to start: %s", name, e)
            return await self._finish(name, status, RunOutcome(
                None, f"failed to start: {e}", should_requeue(svc.restart_policy.condition, None)))

        unhealthy = asyncio.Event()
        monitor = HealthMonitor(svc, self.runtime, health=status.health,
                                on_change=functools.partial(self._on_health, unhealthy=unhealthy))
        monitor_task = asyncio.create_task(monitor.run())
        exit_task = asyncio.create_task(self.runtime.wait(svc))
        watched = {exit_task}
        unhealthy_task = None
        if svc.restart_policy.condition != RestartPolicyCondition.NO:
            # Under "no" an unhealthy instance keeps running and may recover
            unhealthy_task = asyncio.create_task(unhealthy.wait())
            watched.add(unhealthy_task)

        try:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            if exit_task in done:
                exit_code = exit_task.result()
                reason = f"exited with code {exit_code}"
            else:
                logger.warning("[%s] Unhealthy, stopping instance", name)
                await self._transition(name, LifecycleState.STOPPING)
                await self.runtime.stop(svc, self.config.stop_timeout)
                exit_code = None
                reason = "unhealthy"
        finally:
            pending = [t for t in (monitor_task, exit_task, unhealthy_task) if t is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        requeue = should_requeue(svc.restart_policy.condition, exit_code)
        logger.info("[%s] Instance %s", name, reason)
        return await self._finish(name, status, RunOutcome(exit_code, reason, requeue))

    async def _finish(self, name: str, status: ServiceStatus, outcome: RunOutcome) -> RunOutcome:
        status.exit_code = outcome.exit_code
        status.health.status = HealthStatus.STOPPED
        await self._transition(name, LifecycleState.STOPPED)
        return outcome

    async def _on_health(self, name: str, health: HealthStatus, unhealthy: asyncio.Event):
        """
        Maps health transitions of a running instance onto its lifecycle.
        """
        state = self._status[name].state
        if health == HealthStatus.HEALTHY and state in _ACTIVE:
            await self._transition(name, LifecycleState.HEALTHY)
            await self._transition(name, LifecycleState.RUNNING)
        elif health == HealthStatus.UNHEALTHY and state in _ACTIVE:
            await self._transition(name, LifecycleState.UNHEALTHY)
            unhealthy.set()
        else:
            await self._notify()

    # Shutdown

    async def _stop_service(self, name: str, grace: float):
        """
        Stops one service after its dependents have stopped.
        """
        changed = self._condition()
        dependents = sorted(self.graph.dependents(name))

        def dependents_stopped():
            return all(self._status[d].state in _IDLE for d in dependents)

        async def wait_for_dependents():
            async with changed:
                await changed.wait_for(dependents_stopped)

        try:
            await asyncio.wait_for(wait_for_dependents(), timeout=grace)
        except asyncio.TimeoutError:
            still_running = [d for d in dependents if self._status[d].state not in _IDLE]
            self._warn(f"grace period expired, stopping '{name}' while "
                       f"{', '.join(still_running)} still running")

        svc = self.stack.services[name]
        if self._status[name].state in _ACTIVE:
            await self._transition(name, LifecycleState.STOPPING)
            forced = await self.runtime.stop(svc, self.config.stop_timeout)
            if forced:
                self._warn(f"'{name}' did not stop within {self.config.stop_timeout:g}s and was killed")

        task = self._tasks.get(name)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._status[name].health.status = HealthStatus.STOPPED
        await self._transition(name, LifecycleState.STOPPED)
        self.stop_order.append(name)
        logger.info("[%s] Stopped", name)

    # State

    def _supervisor_done(self, name: str, task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        logger.error("[%s] Supervisor failed: %s", name, task.exception(), exc_info=task.exception())
        self._status[name].terminal = True

    def _is_ready(self, name: str) -> bool:
        st = self._status[name]
        if st.state == LifecycleState.RUNNING and st.is_healthy:
            return True
        # One-shot services that completed successfully
        return st.terminal and st.exit_code == 0

    def _condition(self) -> asyncio.Condition:
        if self._changed is None:
            self._changed = asyncio.Condition()
        return self._changed

    def _set_state(self, name: str, state: LifecycleState):
        """Records a transition; the caller holds the condition lock."""
        status = self._status[name]
        if status.state == state:
            return
        logger.debug("[%s] %s -> %s", name, status.state.value, state.value)
        status.state = state
        self.history.append((name, state))

    async def _transition(self, name: str, state: LifecycleState):
        changed = self._condition()
        async with changed:
            self._set_state(name, state)
            changed.notify_all()

    async def _notify(self):
        changed = self._condition()
        async with changed:
            changed.notify_all()

    def _warn(self, message: str):
        logger.warning("%s", message)
        self.warnings.append(message)
