"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, Mapping, Optional

from ..MODELS.orchestration_config import MergedStack
from ..exceptions import MissingVariableError, ParseError

# $$ escape | ${NAME[op word]} | $NAME | anything else starting with ${
_PATTERN = re.compile(
    r'\$(?:'
    r'(?P<escaped>\$)'
    r'|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<word>[^}]*))?\}'
    r'|(?P<named>[A-Za-z_][A-Za-z0-9_]*)'
    r'|(?P<invalid>\{[^}]*\}?)'
    r')'
)

class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $$, $VAR, ${VAR}, ${VAR:-default}, ${VAR-default},
    ${VAR:?message}, ${VAR?message} and ${VAR:+value}.

    Substitution is single-pass: a substituted value is never expanded again.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises MissingVariableError: If a variable is not found and no default is provided.
        :raises ParseError: If a placeholder is malformed.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            if match.group('escaped'):
                return '$'
            if match.group('invalid') is not None:
                raise ParseError(f"invalid interpolation format in {template!r}")

            var_name = match.group('braced') or match.group('named')
            modifier = match.group('op')   # None, '-', ':-', '+', ':+', '?', ':?'
            word = match.group('word') or ''
            value = context.get(var_name)
            is_set = value is not None
            # The colon forms also treat an empty value as unset
            is_usable = bool(value) if modifier and modifier.startswith(':') else is_set

            if modifier in ('-', ':-'):
                return value if is_usable else word
            if modifier in ('+', ':+'):
                return word if is_usable else ''
            if modifier in ('?', ':?'):
                if is_usable:
                    return value
                raise MissingVariableError(var_name, hint=word or None)
            if is_set:
                return value
            raise MissingVariableError(var_name)

        return _PATTERN.sub(replace, template)


class StackInterpolator:
    """
    Walks every string value of a merged stack and interpolates it.
    Mapping keys are left untouched.
    """
    def __init__(self, context: Mapping[str, str]):
        """
        :param context: Variable mapping, already merged from its sources.
        """
        self.context = context

    def interpolate_stack(self, stack: MergedStack) -> MergedStack:
        """
        Returns a copy of the stack with all markers substituted.

        :raises MissingVariableError: Naming the service, field and originating file.
        """
        services = {}
        for name, raw in stack.services.items():
            services[name] = {
                field: self._walk(value, field, name, stack.origin_of(name, field))
                for field, value in raw.items()
            }
        networks = {key: self._walk(value, f"networks.{key}", None, None)
                    for key, value in stack.networks.items()}
        volumes = {key: self._walk(value, f"volumes.{key}", None, None)
                   for key, value in stack.volumes.items()}
        name = self._walk(stack.name, "name", None, None) if stack.name else stack.name
        return stack.model_copy(update={
            "name": name,
            "services": services,
            "networks": networks,
            "volumes": volumes,
        })

    def _walk(self, value: Any, field: str, service: Optional[str], origin: Optional[str]) -> Any:
        """
        Recursively interpolates strings inside dicts and lists.
        """
        if isinstance(value, str):
            try:
                return EnvironmentInterpolator.interpolate(value, self.context)
            except MissingVariableError as e:
                raise MissingVariableError(e.variable, field=field, service=service,
                                           origin=origin, hint=e.hint) from e
            except ParseError as e:
                raise ParseError(f"{e.message} (field '{field}')", origin=origin, service=service) from e
        if isinstance(value, dict):
            return {k: self._walk(v, f"{field}.{k}", service, origin) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, field, service, origin) for v in value]
        return value
