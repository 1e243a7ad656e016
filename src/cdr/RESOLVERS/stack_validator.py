"""
Non-fatal checks over a resolved stack.
"""
from typing import Iterable, List

from ..MODELS.orchestration_config import EffectiveStack
from ..MODELS.service_definition import DependencyCondition


class StackValidator:
    """
    Reports problems that do not stop a plan from being built but usually
    point at a mistake in the descriptors.
    """

    def warnings(self, stack: EffectiveStack, required_services: Iterable[str] = ()) -> List[str]:
        """
        Collects warnings for a stack.

        :param stack: The effective stack.
        :param required_services: Services that must be defined.
        :return: Human readable warnings, in a stable order.
        """
        found = []
        for name in required_services:
            if name not in stack.services:
                found.append(f"required service '{name}' is not defined")

        if stack.services and not any(s.health_check for s in stack.services.values()):
            found.append("no service declares a health check")

        for name in sorted(stack.services):
            svc = stack.services[name]
            for target, dep in sorted(svc.depends_on.items()):
                target_svc = stack.services.get(target)
                if (dep.condition == DependencyCondition.HEALTHY and target_svc is not None
                        and target_svc.health_check is None):
                    found.append(f"service '{name}' waits for '{target}' to be healthy, "
                                 f"but '{target}' has no health check")
            for volume in svc.volumes:
                if volume.is_named and volume.source not in stack.volumes:
                    found.append(f"service '{name}' uses undeclared volume '{volume.source}'")
            for network in svc.networks:
                if network != "default" and network not in stack.networks:
                    found.append(f"service '{name}' uses undeclared network '{network}'")
        return found
