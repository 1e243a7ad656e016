"""
Runtime backends that start, probe and stop service instances.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from ..RUNNERS.process_runner import ProcessRunner
from .environment_manager import EnvironmentManager

logger = logging.getLogger(__name__)


class ServiceRuntime(ABC):
    """
    Interface the startup sequencer uses to drive service instances.
    Each method is called only from the owning service's task.
    """

    @abstractmethod
    async def start(self, service: ServiceDefinition) -> None:
        """Starts an instance of the service."""

    @abstractmethod
    async def wait(self, service: ServiceDefinition) -> Optional[int]:
        """Waits for the instance to terminate and returns its exit code."""

    @abstractmethod
    async def probe(self, service: ServiceDefinition) -> bool:
        """Runs the service's health check once."""

    @abstractmethod
    async def stop(self, service: ServiceDefinition, timeout: float) -> bool:
        """Stops the instance; returns True when it had to be killed."""


class ProcessRuntime(ServiceRuntime):
    """
    Runs each service's command as a local process.
    Services without a command run as idle placeholders until stopped.
    """

    def __init__(self, base_dir: str = ".", base_env: Optional[Mapping[str, str]] = None):
        """
        :param base_dir: Base directory for logs and relative env_file paths.
        :param base_env: Environment inherited by every process; defaults to os.environ.
        """
        self.base_dir = base_dir
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.executor = EntrypointExecutor()
        self.env_manager = EnvironmentManager(base_dir)
        self._runners: Dict[str, ProcessRunner] = {}
        self._idle: Dict[str, asyncio.Event] = {}

    def environment_for(self, service: ServiceDefinition) -> Dict[str, str]:
        """
        Process environment: the base environment, then the service's
        env_file entries, then its environment entries. Entries without a
        value keep the inherited one.

        :raises NotFoundError: If an env_file does not exist.
        """
        env = self.env_manager.get_merged_environment(service.env_file, self.base_env)
        for key, value in service.environment.items():
            if value is not None:
                env[key] = value
        return env

    async def start(self, service: ServiceDefinition) -> None:
        command = self.executor.get_full_command(service.entrypoint, service.command)
        if not command:
            logger.warning("[%s] No command specified, running as a placeholder.", service.name)
            self._idle[service.name] = asyncio.Event()
            return

        log_path = os.path.join(self.base_dir, ".cdr", "logs", f"{service.name}.log")
        runner = ProcessRunner(service.name, log_file=log_path)
        self._runners[service.name] = runner
        await runner.start(command, env=self.environment_for(service), working_dir=service.working_dir)

    async def wait(self, service: ServiceDefinition) -> Optional[int]:
        if service.name in self._idle:
            await self._idle[service.name].wait()
            return 0
        runner = self._runners.get(service.name)
        if runner is None:
            return None
        return await runner.wait()

    async def probe(self, service: ServiceDefinition) -> bool:
        command, use_shell = self.executor.get_health_command(service.health_check)
        if command is None:
            return True

        env = self.environment_for(service)
        if use_shell:
            proc = await asyncio.create_subprocess_shell(
                command, env=env, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        else:
            proc = await asyncio.create_subprocess_exec(
                *command, env=env, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        try:
            _, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        if proc.returncode != 0:
            logger.debug("[%s] Health check failed (exit %s): %s", service.name, proc.returncode,
                         stderr.decode(errors="replace")[:500] if stderr else "")
        return proc.returncode == 0

    async def stop(self, service: ServiceDefinition, timeout: float) -> bool:
        idle = self._idle.pop(service.name, None)
        if idle is not None:
            idle.set()
            return False
        runner = self._runners.pop(service.name, None)
        if runner is None:
            return False
        return await runner.stop(timeout=timeout)

    def status(self, name: str) -> str:
        """
        Gets the current process status of a service.

        :return: Status string (e.g., 'running', 'stopped', 'exited(0)').
        """
        if name in self._idle:
            return "running"
        runner = self._runners.get(name)
        if runner is None:
            return "stopped"
        if runner.is_running():
            return "running"
        return f"exited({runner.get_exit_code()})"
