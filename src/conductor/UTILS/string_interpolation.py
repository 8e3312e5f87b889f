"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, Mapping, Optional

from ..errors import MissingVariableError, ValidationError


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings and parsed documents.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?message}, ${VAR?message} and the $$ escape.
    Defaults and alternate values may themselves contain placeholders.
    """
    # Group 'escaped': $$
    # Group 'named': $VAR
    # Group 'braced': start of ${...}, whose body is matched by BODY
    PATTERN = re.compile(
        r"""
        \$(?:
            (?P<escaped>\$)
          | (?P<named>[_a-zA-Z][_a-zA-Z0-9]*)
          | (?P<braced>\{)
        )
        """,
        re.VERBOSE,
    )
    BODY = re.compile(r"(?P<name>[_a-zA-Z][_a-zA-Z0-9]*)(?:(?P<sep>:?[-+?])(?P<arg>.*))?\Z", re.DOTALL)

    @classmethod
    def interpolate(cls, template: str, context: Mapping[str, str], source: Optional[str] = None) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param source: Name of the file the template came from, for error messages.
        :return: The interpolated string.
        :raises MissingVariableError: If a variable is not found and no default is provided.
        :raises ValidationError: If a placeholder is malformed.
        """
        parts = []
        pos = 0
        while True:
            match = cls.PATTERN.search(template, pos)
            if match is None:
                parts.append(template[pos:])
                return ''.join(parts)
            parts.append(template[pos:match.start()])
            pos = match.end()

            if match.group('escaped'):
                parts.append('$')
                continue
            if match.group('named'):
                parts.append(cls._substitute(match.group('named'), None, '', context, source))
                continue

            end = cls._closing_brace(template, pos)
            body = cls.BODY.match(template, pos, end) if end >= 0 else None
            if body is None:
                raise ValidationError(f"invalid interpolation format in {template!r}", source=source)
            parts.append(cls._substitute(body.group('name'), body.group('sep'), body.group('arg') or '',
                                         context, source))
            pos = end + 1

    @staticmethod
    def _closing_brace(template: str, start: int) -> int:
        """
        Index of the brace closing a placeholder opened just before start, or -1.
        """
        depth = 1
        i = start
        while i < len(template):
            if template.startswith('$$', i):
                i += 2
                continue
            if template.startswith('${', i):
                depth += 1
                i += 2
                continue
            if template[i] == '}':
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        return -1

    @classmethod
    def _substitute(cls, var_name: str, modifier: Optional[str], arg: str, context: Mapping[str, str],
                    source: Optional[str]) -> str:
        value = context.get(var_name)

        def alternative():
            # nested placeholders are only resolved when the alternative is used
            return cls.interpolate(arg, context, source)

        if modifier is None:
            if value is None:
                raise MissingVariableError(var_name, source=source)
            return value
        if modifier == ':-':
            # use default if VAR is unset or empty
            return value if value else alternative()
        if modifier == '-':
            return value if value is not None else alternative()
        if modifier == ':+':
            return alternative() if value else ''
        if modifier == '+':
            return alternative() if value is not None else ''
        if modifier == ':?':
            if not value:
                raise MissingVariableError(var_name, arg or None, source=source)
            return value
        # '?'
        if value is None:
            raise MissingVariableError(var_name, arg or None, source=source)
        return value

    @classmethod
    def interpolate_tree(cls, node: Any, context: Mapping[str, str], source: Optional[str] = None) -> Any:
        """
        Recursively interpolates every string value of a parsed document.
        Mapping keys are left untouched.

        :param node: A value produced by the YAML loader.
        :param context: The environment variables context.
        :param source: Name of the originating file.
        :return: A new tree with every string interpolated.
        """
        if isinstance(node, str):
            return cls.interpolate(node, context, source)
        if isinstance(node, dict):
            return {key: cls.interpolate_tree(value, context, source) for key, value in node.items()}
        if isinstance(node, list):
            return [cls.interpolate_tree(item, context, source) for item in node]
        return node


def build_context(*layers: Optional[Mapping[str, Optional[str]]]) -> Dict[str, str]:
    """
    Merges environment layers, later layers winning. None values are dropped.
    """
    context: Dict[str, str] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is not None:
                context[key] = value
    return context
