"""
Blue-green template parser.

Parses CloudFormation-style YAML templates (Parameters, Transform, Hooks,
Resources, Outputs) and binds parameter values. Short-form intrinsic tags
(!Ref, !GetAtt, !Sub, !Join) are mapped to their long forms so that the
rest of the compiler only ever sees plain dicts and lists.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import re

import yaml


class TemplateError(Exception):
    """Base class for template errors"""
    pass


class TemplateParseError(TemplateError):
    """Raised when a template cannot be parsed or its parameters cannot be bound"""
    pass


PSEUDO_PARAMETERS = ('AWS::Region', 'AWS::StackName', 'AWS::AccountId', 'AWS::Partition')

# Parameter types with a recognizable id format
_TYPED_ID_PREFIXES = {
    'AWS::EC2::VPC::Id': 'vpc-',
    'AWS::EC2::Subnet::Id': 'subnet-',
    'AWS::EC2::SecurityGroup::Id': 'sg-',
}

_SUPPORTED_PARAMETER_TYPES = {'String', 'Number'} | set(_TYPED_ID_PREFIXES)


@dataclass
class Template:
    """Parsed template with parameter values bound"""
    parameters: Dict[str, str]
    resources: Dict[str, Dict[str, Any]]
    hooks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    transforms: List[str] = field(default_factory=list)
    description: Optional[str] = None

    def resource_type(self, logical_id: str) -> Optional[str]:
        resource = self.resources.get(logical_id)
        return resource.get('Type') if resource else None


class _TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form intrinsics"""
    pass


def _construct_ref(loader, node):
    return {'Ref': loader.construct_scalar(node)}


def _construct_getatt(loader, node):
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
        if '.' not in value:
            raise TemplateParseError(f"!GetAtt expects 'Resource.Attribute', got '{value}'")
        logical_id, attribute = value.split('.', 1)
        return {'Fn::GetAtt': [logical_id, attribute]}
    return {'Fn::GetAtt': loader.construct_sequence(node, deep=True)}


def _construct_sub(loader, node):
    if isinstance(node, yaml.ScalarNode):
        return {'Fn::Sub': loader.construct_scalar(node)}
    return {'Fn::Sub': loader.construct_sequence(node, deep=True)}


def _construct_join(loader, node):
    if not isinstance(node, yaml.SequenceNode):
        raise TemplateParseError("!Join expects a [delimiter, [values]] sequence")
    return {'Fn::Join': loader.construct_sequence(node, deep=True)}


_TemplateLoader.add_constructor('!Ref', _construct_ref)
_TemplateLoader.add_constructor('!GetAtt', _construct_getatt)
_TemplateLoader.add_constructor('!Sub', _construct_sub)
_TemplateLoader.add_constructor('!Join', _construct_join)


class TemplateParser:
    """Parser for blue-green templates"""

    def parse(self, template_body: str, parameters: dict = None) -> Template:
        """
        Parse template YAML content and bind parameter values.

        Args:
            template_body: YAML content as string
            parameters: Dict of parameter values keyed by parameter name

        Returns:
            Template with parameter values resolved (defaults applied)

        Raises:
            TemplateParseError: If YAML is invalid, required sections are
                missing, or parameter values don't match their declarations
        """
        if parameters is None:
            parameters = {}

        try:
            data = yaml.load(template_body, Loader=_TemplateLoader)
        except yaml.constructor.ConstructorError as e:
            raise TemplateParseError(f"Unsupported YAML tag: {e.problem}")
        except yaml.YAMLError as e:
            raise TemplateParseError(f"Invalid YAML syntax: {e}")

        if not isinstance(data, dict):
            raise TemplateParseError("Template must be a YAML object")

        resources = data.get('Resources')
        if not resources:
            raise TemplateParseError("Missing 'Resources' section")
        if not isinstance(resources, dict):
            raise TemplateParseError("'Resources' must be a mapping of logical ids")

        for logical_id, resource in resources.items():
            if not isinstance(resource, dict) or 'Type' not in resource:
                raise TemplateParseError(f"Resource '{logical_id}' is missing a 'Type'")

        transforms = data.get('Transform') or []
        if isinstance(transforms, str):
            transforms = [transforms]

        return Template(
            parameters=self._bind_parameters(data.get('Parameters') or {}, parameters),
            resources=resources,
            hooks=data.get('Hooks') or {},
            outputs=data.get('Outputs') or {},
            transforms=list(transforms),
            description=data.get('Description'),
        )

    def _bind_parameters(self, declared: dict, values: dict) -> Dict[str, str]:
        """
        Bind supplied values to declared parameters.

        Every declared parameter needs a value or a Default; values for
        undeclared parameters are rejected.
        """
        unknown = sorted(set(values) - set(declared))
        if unknown:
            raise TemplateParseError(f"Unknown parameters: {', '.join(unknown)}")

        bound = {}
        missing = []
        for name, declaration in declared.items():
            declaration = declaration or {}
            param_type = declaration.get('Type', 'String')
            if param_type not in _SUPPORTED_PARAMETER_TYPES:
                raise TemplateParseError(f"Parameter '{name}' has unsupported type '{param_type}'")

            if name in values:
                value = str(values[name])
            elif 'Default' in declaration:
                value = str(declaration['Default'])
            else:
                missing.append(name)
                continue

            prefix = _TYPED_ID_PREFIXES.get(param_type)
            if prefix and not value.startswith(prefix):
                raise TemplateParseError(
                    f"Parameter '{name}' must be a {param_type} (starting with '{prefix}'), got '{value}'"
                )
            if param_type == 'Number' and not re.fullmatch(r'-?\d+(\.\d+)?', value):
                raise TemplateParseError(f"Parameter '{name}' must be a number, got '{value}'")

            allowed = declaration.get('AllowedValues')
            if allowed and value not in [str(v) for v in allowed]:
                raise TemplateParseError(f"Parameter '{name}' must be one of {allowed}, got '{value}'")

            bound[name] = value

        if missing:
            raise TemplateParseError(f"Missing required parameters: {', '.join(missing)}")

        return bound
