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
Renderers for resolved deployment plans.
"""
import json
from typing import Any, Dict

import yaml
from jinja2 import Template

from ..MODELS.service_definition import ServiceDefinition
from ..RESOLVERS.stack_resolver import ResolvedPlan

PLAN_TEMPLATE = """\
Project: {{ name or '-' }}
Layers: {{ origins | join(', ') }}

Startup order:
{% for svc in order %}  {{ loop.index }}. {{ svc }}
{% endfor %}
Services:
{% for svc in services %}
  {{ svc.name }}
    image: {{ svc.image or '-' }}{% if svc.build %}  (build: {{ svc.build.context }}){% endif %}
    restart: {{ svc.restart_policy.condition.value }}{% if svc.restart_policy.max_retries %}:{{ svc.restart_policy.max_retries }}{% endif %}
{% if svc.command %}    command: {{ svc.command | join(' ') }}
{% endif %}{% if svc.ports %}    ports: {{ svc.ports | join(', ') }}
{% endif %}{% if svc.volumes %}    volumes: {{ svc.volumes | join(', ') }}
{% endif %}{% if svc.environment %}    environment:
{% for key, value in svc.environment | dictsort %}      {{ key }}={{ value if value is not none else '' }}
{% endfor %}{% endif %}{% if svc.depends_on %}    depends_on: {% for dep in svc.depends_on.values() | sort(attribute='service') %}{{ dep.service }} ({{ dep.condition.value }}){% if not loop.last %}, {% endif %}{% endfor %}
{% endif %}{% if svc.health_check %}    healthcheck: {{ svc.health_check.test | join(' ') }} every {{ svc.health_check.interval }}s, timeout {{ svc.health_check.timeout }}s, {{ svc.health_check.retries }} retries, start period {{ svc.health_check.start_period }}s
{% endif %}{% if svc.resources %}    resources: cpus={{ svc.resources.cpus if svc.resources.cpus is not none else '-' }} memory={{ svc.resources.memory if svc.resources.memory is not none else '-' }}
{% endif %}{% endfor %}"""


def service_to_dict(svc: ServiceDefinition) -> Dict[str, Any]:
    """
    Compose-shaped dictionary for a typed service, omitting empty fields.
    """
    data: Dict[str, Any] = {}
    if svc.image:
        data['image'] = svc.image
    if svc.build:
        data['build'] = svc.build.model_dump(exclude_none=True, exclude_defaults=True) or {'context': svc.build.context}
    if svc.entrypoint:
        data['entrypoint'] = list(svc.entrypoint)
    if svc.command:
        data['command'] = list(svc.command)
    if svc.working_dir:
        data['working_dir'] = svc.working_dir
    if svc.user:
        data['user'] = svc.user
    if svc.environment:
        data['environment'] = dict(svc.environment)
    if svc.env_file:
        data['env_file'] = list(svc.env_file)
    if svc.ports:
        data['ports'] = [str(p) for p in svc.ports]
    if svc.expose:
        data['expose'] = list(svc.expose)
    if svc.networks:
        data['networks'] = list(svc.networks)
    if svc.hostname:
        data['hostname'] = svc.hostname
    if svc.volumes:
        data['volumes'] = [str(v) for v in svc.volumes]
    data['restart'] = svc.restart_policy.condition.value
    if svc.restart_policy.max_retries:
        data['restart'] += f":{svc.restart_policy.max_retries}"
    if svc.depends_on:
        data['depends_on'] = {name: {'condition': f"service_{dep.condition.value}"}
                              for name, dep in sorted(svc.depends_on.items())}
    if svc.health_check:
        data['healthcheck'] = svc.health_check.model_dump()
    if svc.resources:
        data['deploy'] = {'resources': {'limits': svc.resources.model_dump(exclude_none=True)}}
    if svc.labels:
        data['labels'] = dict(svc.labels)
    return data


class PlanRenderer:
    """
    Renders a resolved plan as text, YAML or JSON.
    """
    FORMATS = ('text', 'yaml', 'json')

    def __init__(self):
        self.template = Template(PLAN_TEMPLATE, trim_blocks=False, keep_trailing_newline=True)

    def to_dict(self, plan: ResolvedPlan) -> Dict[str, Any]:
        """
        Plan as a plain dictionary: the effective stack plus the startup order.
        """
        stack = plan.stack
        data: Dict[str, Any] = {}
        if stack.name:
            data['name'] = stack.name
        data['services'] = {name: service_to_dict(stack.services[name]) for name in plan.order}
        if stack.networks:
            data['networks'] = dict(stack.networks)
        if stack.volumes:
            data['volumes'] = dict(stack.volumes)
        data['x-startup-order'] = list(plan.order)
        return data

    def render(self, plan: ResolvedPlan, fmt: str = 'text') -> str:
        """
        Renders the plan.

        :param plan: The resolved plan.
        :param fmt: One of ``FORMATS``.
        :return: The rendered document.
        """
        if fmt == 'yaml':
            return yaml.safe_dump(self.to_dict(plan), sort_keys=False, default_flow_style=False)
        if fmt == 'json':
            return json.dumps(self.to_dict(plan), indent=2)
        if fmt != 'text':
            raise ValueError(f"unknown format {fmt!r}")
        return self.template.render(
            name=plan.stack.name,
            origins=plan.stack.origins,
            order=plan.order,
            services=[plan.stack.services[name] for name in plan.order],
        )
