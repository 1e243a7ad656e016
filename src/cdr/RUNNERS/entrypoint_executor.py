"""
Utilities for resolving the full execution command for a service.
"""
from typing import List, Optional

from ..MODELS.service_definition import HealthCheck

class EntrypointExecutor:
    """
    Handles the merging of entrypoint and command according to Docker rules,
    and the decoding of health check tests.
    """
    def get_full_command(self, entrypoint: List[str], cmd: List[str]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The entrypoint list.
        :param cmd: The command list.
        :return: The full command list.
        """
        # If an entrypoint is defined, it's the executable and cmd becomes arguments.
        if entrypoint:
            return entrypoint + cmd
        return list(cmd)

    def get_health_command(self, health_check: Optional[HealthCheck]):
        """
        Decodes a health check test.

        :param health_check: The health check, if any.
        :return: ``(command, use_shell)``; command is None when there is nothing to run.
        """
        if not health_check or not health_check.test:
            return None, False
        test = health_check.test
        if test[0] == "NONE":
            return None, False
        if test[0] == "CMD-SHELL":
            return " ".join(test[1:]), True
        if test[0] == "CMD":
            return test[1:], False
        return list(test), False
