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
Health monitoring for a single service instance: Docker-style health check
probes with interval, timeout, retries and start period.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from ..MODELS.lifecycle import HealthStatus, ServiceHealth
from ..MODELS.service_definition import ServiceDefinition
from ..exceptions import HealthCheckTimeoutError
from .process_manager import ServiceRuntime

logger = logging.getLogger(__name__)

HealthCallback = Callable[[str, HealthStatus], Awaitable[None]]


class HealthMonitor:
    """
    Probes one running instance and reports status transitions.

    Probes run every ``interval`` seconds, each bounded by ``timeout``.
    During ``start_period`` a passing probe marks the instance healthy but
    failures are not counted. Afterwards ``retries`` consecutive failures
    mark it unhealthy; a later passing probe makes it healthy again.
    """

    def __init__(
        self,
        service: ServiceDefinition,
        runtime: ServiceRuntime,
        health: Optional[ServiceHealth] = None,
        on_change: Optional[HealthCallback] = None,
    ):
        """
        Initializes the health monitor.

        :param service: Definition of the monitored service.
        :param runtime: Runtime used to run the probe.
        :param health: Health record to update; a fresh one by default.
        :param on_change: Awaited with (service name, new status) on every transition.
        """
        self.service = service
        self.runtime = runtime
        self.on_change = on_change
        self.health = health if health is not None else ServiceHealth()

    async def run(self):
        """
        Monitors until cancelled. Without a health check the instance is
        reported healthy immediately and the monitor returns.
        """
        hc = self.service.health_check
        if hc is None:
            await self._set_status(HealthStatus.HEALTHY)
            return

        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            await asyncio.sleep(hc.interval)
            in_start_period = loop.time() - started < hc.start_period
            success = await self._probe()

            if success:
                self.health.failing_streak = 0
                await self._set_status(HealthStatus.HEALTHY)
                continue
            if in_start_period:
                logger.debug("[%s] Probe failed during start period, not counted", self.service.name)
                continue

            self.health.failing_streak += 1
            logger.debug("[%s] Probe failed (%d/%d)", self.service.name,
                         self.health.failing_streak, hc.retries)
            if self.health.failing_streak >= hc.retries:
                await self._set_status(HealthStatus.UNHEALTHY)

    async def _probe(self) -> bool:
        """
        Runs one probe; timeouts and runtime errors count as failures.
        """
        hc = self.service.health_check
        self.health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            ok = await asyncio.wait_for(self.runtime.probe(self.service), timeout=hc.timeout)
        except asyncio.TimeoutError:
            error = HealthCheckTimeoutError(self.service.name, hc.timeout)
            logger.warning("%s", error)
            self.health.last_output = error.message
            return False
        except OSError as e:
            self.health.last_output = str(e)
            logger.warning("[%s] Health check could not run: %s", self.service.name, e)
            return False
        except Exception as e:
            self.health.last_output = f"health check error: {e}"
            logger.exception("[%s] Health check raised an unexpected error", self.service.name)
            return False
        self.health.last_output = "" if ok else "health check failed"
        return ok

    async def _set_status(self, status: HealthStatus):
        previous = self.health.status
        if previous == status:
            return
        self.health.status = status
        logger.info("[%s] Health: %s -> %s", self.service.name, previous.value, status.value)
        if self.on_change:
            await self.on_change(self.service.name, status)
