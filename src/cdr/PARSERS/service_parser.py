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
Translation of merged, interpolated service mappings into typed definitions.
"""
import re
import shlex
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..MODELS.orchestration_config import EffectiveStack, MergedStack
from ..MODELS.service_definition import (
    BuildSpec,
    DependencyCondition,
    HealthCheck,
    PortMapping,
    ResourceLimits,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    ServiceDependency,
    VolumeMount,
)
from ..exceptions import ParseError

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(h|ms|m|s|us|ns)')
_DURATION_UNITS = {'h': 3600.0, 'm': 60.0, 's': 1.0, 'ms': 1e-3, 'us': 1e-6, 'ns': 1e-9}
_MEMORY = re.compile(r'^(\d+(?:\.\d+)?)\s*([kmgt]?)i?b?$', re.IGNORECASE)
_MEMORY_UNITS = {'': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3, 't': 1024 ** 4}
_CONDITIONS = {
    'started': DependencyCondition.STARTED,
    'service_started': DependencyCondition.STARTED,
    'healthy': DependencyCondition.HEALTHY,
    'service_healthy': DependencyCondition.HEALTHY,
}


def parse_duration(value: Any) -> float:
    """
    Converts a compose duration (``30s``, ``1m30s``, ``500ms`` or a bare
    number of seconds) to seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or ''.join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def parse_memory(value: Any) -> int:
    """
    Converts a memory size (``512m``, ``1g``, ``1GB``, bytes) to bytes.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = _MEMORY.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid memory size {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


class ServiceParser:
    """
    Builds ``ServiceDefinition`` objects from raw merged mappings.
    """

    def build_stack(self, merged: MergedStack) -> EffectiveStack:
        """
        Types every service of a merged, interpolated stack.

        :param merged: The merged stack with all variables substituted.
        :return: The effective stack.
        :raises ParseError: If a field has an unusable value.
        """
        services = {}
        for name, raw in merged.services.items():
            origin = merged.origin_of(name)
            services[name] = self.parse_service(name, raw, origin=origin)
        return EffectiveStack(
            name=merged.name,
            services=services,
            networks=merged.networks,
            volumes=merged.volumes,
            origins=merged.origins,
            provenance=merged.provenance,
        )

    def parse_service(self, name: str, raw: Dict[str, Any], origin: Optional[str] = None) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param raw: The merged service mapping.
        :param origin: File reported in diagnostics.
        :return: A ServiceDefinition instance.
        """
        try:
            if not raw.get('image') and not raw.get('build'):
                raise ValueError("service must declare 'image' or 'build'")
            return ServiceDefinition(
                name=name,
                image=raw.get('image'),
                build=self._parse_build(raw.get('build')),
                command=self._to_command(raw.get('command')),
                entrypoint=self._to_command(raw.get('entrypoint')),
                working_dir=raw.get('working_dir'),
                user=self._to_optional_str(raw.get('user')),
                environment=self._parse_environment(raw.get('environment')),
                env_file=self._to_list(raw.get('env_file')),
                ports=[self._parse_port(p) for p in self._to_list(raw.get('ports'))],
                expose=[n for p in self._to_list(raw.get('expose')) for n in self._parse_expose(p)],
                networks=list((raw.get('networks') or {}).keys()),
                hostname=raw.get('hostname'),
                volumes=[self._parse_volume(v) for v in self._to_list(raw.get('volumes'))],
                restart_policy=self._parse_restart(raw.get('restart')),
                health_check=self._parse_health_check(raw.get('healthcheck')),
                depends_on=self._parse_depends_on(raw.get('depends_on')),
                resources=self._parse_resources(raw),
                labels={k: str(v) for k, v in (raw.get('labels') or {}).items() if v is not None},
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            # pydantic's ValidationError is a ValueError
            if isinstance(e, ValidationError):
                detail = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            else:
                detail = str(e)
            raise ParseError(f"invalid service definition: {detail}", origin=origin, service=name) from e

    def _parse_build(self, build: Any) -> Optional[BuildSpec]:
        if not build:
            return None
        if not isinstance(build, dict):
            raise ValueError(f"invalid build {build!r}")
        args = build.get('args') or {}
        if isinstance(args, list):
            args = dict(a.split('=', 1) if '=' in a else (a, None) for a in args)
        return BuildSpec(
            context=str(build.get('context', '.')),
            dockerfile=build.get('dockerfile'),
            args={k: (None if v is None else str(v)) for k, v in args.items()},
        )

    def _parse_environment(self, env: Any) -> Dict[str, Optional[str]]:
        if not env:
            return {}
        if not isinstance(env, dict):
            raise ValueError(f"invalid environment {env!r}")
        # YAML booleans and numbers become their compose string form
        result = {}
        for key, value in env.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            result[str(key)] = None if value is None else str(value)
        return result

    def _parse_port(self, port: Any) -> PortMapping:
        """
        Parses ``8000``, ``"9000:80"``, ``"127.0.0.1:8080:80/udp"``,
        ranges like ``"8000-8001:8000-8001"`` or the long form.
        """
        if isinstance(port, dict):
            target, target_end = self._port_range(port['target'])
            published = port.get('published')
            published, published_end = (None, None) if published in (None, '') else self._port_range(published)
            return PortMapping(
                target=target,
                target_end=target_end,
                published=published,
                published_end=published_end,
                host_ip=port.get('host_ip'),
                protocol=port.get('protocol', 'tcp'),
            )
        if isinstance(port, bool):
            raise ValueError(f"invalid port {port!r}")
        text = str(port)
        protocol = 'tcp'
        if '/' in text:
            text, protocol = text.rsplit('/', 1)
        parts = text.rsplit(':', 2)
        host_ip = (parts[0] or None) if len(parts) == 3 else None
        target, target_end = self._port_range(parts[-1])
        published, published_end = None, None
        if len(parts) > 1 and parts[-2]:
            published, published_end = self._port_range(parts[-2])
        if target_end is not None and published is not None:
            # A target range needs a host range of the same size
            if published_end is None or published_end - published != target_end - target:
                raise ValueError(f"port range {port!r} maps ranges of different sizes")
        return PortMapping(target=target, target_end=target_end, published=published,
                           published_end=published_end, host_ip=host_ip, protocol=protocol)

    def _port_range(self, value: Any) -> Tuple[int, Optional[int]]:
        """
        Splits ``"3000-3005"`` into ``(3000, 3005)``; a single port has no end.
        """
        start, sep, end = str(value).partition('-')
        if not sep:
            return int(start), None
        first, last = int(start), int(end)
        if last < first:
            raise ValueError(f"invalid port range {value!r}")
        return first, last

    def _parse_expose(self, value: Any) -> List[int]:
        first, last = self._port_range(str(value).split('/')[0])
        return list(range(first, (first if last is None else last) + 1))

    def _parse_volume(self, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount(
                source=volume.get('source'),
                target=volume['target'],
                read_only=bool(volume.get('read_only', False)),
            )
        parts = str(volume).split(':')
        if len(parts) == 1:
            return VolumeMount(target=parts[0])
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only='ro' in parts[2].split(','))
        raise ValueError(f"invalid volume {volume!r}")

    def _parse_restart(self, restart: Any) -> RestartPolicy:
        if restart is None or restart is False:
            return RestartPolicy()
        text = str(restart)
        condition, _, retries = text.partition(':')
        return RestartPolicy(
            condition=RestartPolicyCondition(condition),
            max_retries=int(retries) if retries else 0,
        )

    def _parse_health_check(self, hc: Any) -> Optional[HealthCheck]:
        if not hc:
            return None
        if not isinstance(hc, dict):
            raise ValueError(f"invalid healthcheck {hc!r}")
        if hc.get('disable'):
            return None
        test = hc.get('test')
        if test is None:
            raise ValueError("healthcheck requires 'test'")
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        test = [str(t) for t in test]
        if not test or test[0] == "NONE":
            return None
        if test[0] in ("CMD", "CMD-SHELL") and not any(t.strip() for t in test[1:]):
            raise ValueError(f"healthcheck test {test!r} has no command")
        values = {'test': test}
        for key, field in (('interval', 'interval'), ('timeout', 'timeout'),
                           ('start_period', 'start_period')):
            if hc.get(key) is not None:
                values[field] = parse_duration(hc[key])
        if hc.get('retries') is not None:
            values['retries'] = int(hc['retries'])
        return HealthCheck(**values)

    def _parse_depends_on(self, deps: Any) -> Dict[str, ServiceDependency]:
        if not deps:
            return {}
        if not isinstance(deps, dict):
            raise ValueError(f"invalid depends_on {deps!r}")
        result = {}
        for target, options in deps.items():
            condition = (options or {}).get('condition', 'service_started')
            if condition not in _CONDITIONS:
                raise ValueError(f"unsupported depends_on condition {condition!r} for '{target}'")
            result[target] = ServiceDependency(service=target, condition=_CONDITIONS[condition])
        return result

    def _parse_resources(self, raw: Dict[str, Any]) -> Optional[ResourceLimits]:
        limits = ((raw.get('deploy') or {}).get('resources') or {}).get('limits') or {}
        cpus = limits.get('cpus', raw.get('cpus'))
        memory = limits.get('memory', raw.get('mem_limit'))
        if cpus is None and memory is None:
            return None
        return ResourceLimits(
            cpus=float(cpus) if cpus is not None else None,
            memory=parse_memory(memory) if memory is not None else None,
        )

    def _to_command(self, val: Any) -> List[str]:
        """
        Commands given as a string are split like a shell would.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_optional_str(self, val: Any) -> Optional[str]:
        return None if val is None else str(val)

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, int, dict)):
            return [val]
        return list(val)
