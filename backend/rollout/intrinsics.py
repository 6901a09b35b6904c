"""
Intrinsic function handling for blue-green templates.

Supports Ref, Fn::GetAtt, Fn::Sub and Fn::Join, which is everything the
blue-green templates use. References are either parameters (including the
AWS:: pseudo parameters) or resource logical ids.
"""

import re
from typing import Any, Dict, Optional, Set

from .template_parser import TemplateError


class TemplateResolutionError(TemplateError):
    """Raised when an intrinsic reference cannot be resolved"""
    pass


# ${Name} or ${Name.Attribute}; ${!Literal} is an escaped literal
_SUB_PATTERN = re.compile(r'\$\{(!?)([A-Za-z0-9_:.]+)\}')

INTRINSIC_KEYS = ('Ref', 'Fn::GetAtt', 'Fn::Sub', 'Fn::Join')


def _split_getatt(arg) -> tuple:
    if isinstance(arg, str):
        if '.' not in arg:
            raise TemplateResolutionError(f"Fn::GetAtt expects 'Resource.Attribute', got '{arg}'")
        return tuple(arg.split('.', 1))
    if isinstance(arg, list) and len(arg) == 2:
        return arg[0], arg[1]
    raise TemplateResolutionError(f"Malformed Fn::GetAtt: {arg!r}")


def _sub_parts(arg) -> tuple:
    if isinstance(arg, str):
        return arg, {}
    if isinstance(arg, list) and len(arg) == 2 and isinstance(arg[1], dict):
        return arg[0], arg[1]
    raise TemplateResolutionError(f"Malformed Fn::Sub: {arg!r}")


def find_references(value: Any) -> Set[str]:
    """
    Collect every name referenced by intrinsic functions inside value.

    Returns parameter names and resource logical ids alike; callers filter
    against the names they know about.
    """
    found: Set[str] = set()

    if isinstance(value, dict):
        if len(value) == 1:
            key, arg = next(iter(value.items()))
            if key == 'Ref' and isinstance(arg, str):
                found.add(arg)
                return found
            if key == 'Fn::GetAtt':
                found.add(_split_getatt(arg)[0])
                return found
            if key == 'Fn::Sub':
                template_str, variables = _sub_parts(arg)
                for escaped, name in _SUB_PATTERN.findall(template_str):
                    if escaped:
                        continue
                    base = name.split('.', 1)[0] if not name.startswith('AWS::') else name
                    if base not in variables:
                        found.add(base)
                for item in variables.values():
                    found |= find_references(item)
                return found
        for item in value.values():
            found |= find_references(item)
    elif isinstance(value, list):
        for item in value:
            found |= find_references(item)

    return found


def resolve_value(
    value: Any,
    parameters: Dict[str, str],
    attributes: Optional[Dict[str, Dict[str, Any]]] = None,
    partial: bool = False,
) -> Any:
    """
    Resolve intrinsic functions in value.

    Args:
        value: Template fragment (dict, list or scalar)
        parameters: Parameter and pseudo parameter values
        attributes: Provisioned resources: {logical_id: {'Ref': physical_id, attr: value}}
        partial: Leave references to unprovisioned resources in place instead of failing

    Raises:
        TemplateResolutionError: On unresolvable references when partial is False
    """
    attributes = attributes or {}

    if isinstance(value, list):
        return [resolve_value(item, parameters, attributes, partial) for item in value]

    if not isinstance(value, dict):
        return value

    if len(value) == 1:
        key, arg = next(iter(value.items()))

        if key == 'Ref':
            if arg in parameters:
                return parameters[arg]
            if arg in attributes:
                return attributes[arg]['Ref']
            if partial:
                return value
            raise TemplateResolutionError(f"Unresolved reference: {arg}")

        if key == 'Fn::GetAtt':
            logical_id, attribute = _split_getatt(arg)
            if logical_id in attributes:
                resource_attributes = attributes[logical_id]
                if attribute not in resource_attributes:
                    raise TemplateResolutionError(
                        f"Resource '{logical_id}' has no attribute '{attribute}'"
                    )
                return resource_attributes[attribute]
            if partial:
                return {'Fn::GetAtt': [logical_id, attribute]}
            raise TemplateResolutionError(f"Unresolved attribute: {logical_id}.{attribute}")

        if key == 'Fn::Join':
            if not isinstance(arg, list) or len(arg) != 2 or not isinstance(arg[1], list):
                raise TemplateResolutionError(f"Malformed Fn::Join: {arg!r}")
            delimiter, items = arg
            resolved = [resolve_value(item, parameters, attributes, partial) for item in items]
            if any(isinstance(item, (dict, list)) for item in resolved):
                return {'Fn::Join': [delimiter, resolved]}
            return delimiter.join(str(item) for item in resolved)

        if key == 'Fn::Sub':
            return _resolve_sub(arg, parameters, attributes, partial)

    return {k: resolve_value(v, parameters, attributes, partial) for k, v in value.items()}


def _resolve_sub(arg, parameters, attributes, partial):
    template_str, variables = _sub_parts(arg)
    local = dict(parameters)
    for name, item in variables.items():
        local[name] = resolve_value(item, parameters, attributes, partial)

    unresolved = []

    def replace(match):
        escaped, name = match.group(1), match.group(2)
        if escaped:
            return match.group(0)
        if name in local and not isinstance(local[name], (dict, list)):
            return str(local[name])
        if '.' in name and not name.startswith('AWS::'):
            logical_id, attribute = name.split('.', 1)
            if logical_id in attributes:
                if attribute not in attributes[logical_id]:
                    raise TemplateResolutionError(
                        f"Resource '{logical_id}' has no attribute '{attribute}'"
                    )
                return str(attributes[logical_id][attribute])
        elif name in attributes:
            return str(attributes[name]['Ref'])
        unresolved.append(name)
        return match.group(0)

    result = _SUB_PATTERN.sub(replace, template_str)
    if unresolved:
        if partial:
            pending = {name: local[name] for name in variables if isinstance(local[name], (dict, list))}
            return {'Fn::Sub': [result, pending] if pending else result}
        raise TemplateResolutionError(f"Unresolved Fn::Sub variables: {', '.join(unresolved)}")
    # Escaped literals are only unescaped once nothing is left to substitute
    return result.replace('${!', '${')
