"""
Resource graph compiler.

Turns a parsed blue-green template into a dependency-ordered plan:
shared infrastructure operations in topological order, the blue
environment's task definition and task set templates, the alarm
definitions bound to each color, and the blue-green hook settings.

The compiler is a pure stage: no database access, no platform calls.
Resolving references to provisioned resources happens later through
resolve(), once physical ids and attributes are known.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .template_parser import Template, TemplateError, PSEUDO_PARAMETERS
from .template_validator import (
    TemplateValidator, BlueGreenSettings, BLUE, GREEN, ALARM_TYPE,
)
from .intrinsics import find_references, resolve_value

logger = logging.getLogger(__name__)


class TemplateCompileError(TemplateError):
    """Raised when the resource graph cannot be ordered"""
    pass


@dataclass
class ResourceOperation:
    """One step of a provisioning plan"""
    action: str  # create
    logical_id: str
    resource_type: str
    properties: Dict[str, Any]
    level: int

    def to_dict(self) -> dict:
        return {
            'action': self.action,
            'logical_id': self.logical_id,
            'resource_type': self.resource_type,
            'properties': self.properties,
            'level': self.level,
        }


@dataclass
class AlarmSpec:
    """Threshold alarm on one target group's metric stream"""
    logical_id: str
    alarm_name: str
    color: str
    target_group: str
    metric_name: str
    namespace: str
    statistic: str
    comparison: str
    threshold: float
    period_seconds: int
    evaluation_periods: int

    def to_dict(self) -> dict:
        return {
            'logical_id': self.logical_id,
            'alarm_name': self.alarm_name,
            'color': self.color,
            'target_group': self.target_group,
            'metric_name': self.metric_name,
            'namespace': self.namespace,
            'statistic': self.statistic,
            'comparison': self.comparison,
            'threshold': self.threshold,
            'period_seconds': self.period_seconds,
            'evaluation_periods': self.evaluation_periods,
        }


class ResourceGraph:
    """Dependency graph between resources (edges point at dependencies)"""

    def __init__(self, dependencies: Dict[str, Set[str]]):
        self.dependencies = {node: set(deps) for node, deps in dependencies.items()}

    @classmethod
    def from_resources(cls, resources: Dict[str, Dict[str, Any]]) -> 'ResourceGraph':
        dependencies = {}
        for logical_id, resource in resources.items():
            depends_on = resource.get('DependsOn') or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            references = find_references(resource.get('Properties') or {}) | set(depends_on)
            # Parameters and pseudo parameters are not graph nodes
            dependencies[logical_id] = {name for name in references if name in resources}
        return cls(dependencies)

    def subgraph(self, nodes: Set[str]) -> 'ResourceGraph':
        return ResourceGraph({
            node: deps & nodes for node, deps in self.dependencies.items() if node in nodes
        })

    def levels(self) -> List[List[str]]:
        """
        Group resources by dependency level.

        Resources in the same level don't depend on each other and can be
        created in parallel. Uses topological sort levels.

        Raises:
            TemplateCompileError: If the graph contains a cycle
        """
        in_degree = {node: len(deps) for node, deps in self.dependencies.items()}
        dependents: Dict[str, List[str]] = {node: [] for node in self.dependencies}
        for node, deps in self.dependencies.items():
            for dep in deps:
                dependents[dep].append(node)

        groups = []
        remaining = set(self.dependencies)

        while remaining:
            current_group = [node for node in remaining if in_degree[node] == 0]

            if not current_group:
                raise TemplateCompileError(
                    f"Circular dependency between resources: {', '.join(sorted(remaining))}"
                )

            groups.append(sorted(current_group))  # Sort for deterministic order

            for node in current_group:
                remaining.remove(node)
                for dependent in dependents[node]:
                    in_degree[dependent] -= 1

        return groups

    def creation_order(self) -> List[str]:
        return [node for group in self.levels() for node in group]

    def deletion_order(self) -> List[str]:
        """Dependents are removed before the resources they depend on"""
        return list(reversed(self.creation_order()))


@dataclass
class CompiledStack:
    """Output of the compiler for one template"""
    stack_name: str
    template: Template
    settings: BlueGreenSettings
    graph: ResourceGraph
    operations: List[ResourceOperation]
    alarms: List[AlarmSpec]
    task_definition: Dict[str, Any]
    task_set: Dict[str, Any]
    parameters: Dict[str, str]
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def image(self) -> Optional[str]:
        """Image of the essential container (first container if none is marked)"""
        containers = self.task_definition.get('ContainerDefinitions') or []
        essential = [c for c in containers if isinstance(c, dict) and c.get('Essential', True)]
        chosen = (essential or containers or [{}])[0]
        image = chosen.get('Image') if isinstance(chosen, dict) else None
        return image if isinstance(image, str) else None

    def alarms_for(self, color: str) -> List[AlarmSpec]:
        return [alarm for alarm in self.alarms if alarm.color == color]

    def plan(self) -> dict:
        """Dry-run description of what provisioning this stack does"""
        return {
            'stack': self.stack_name,
            'levels': self.graph.subgraph({op.logical_id for op in self.operations}).levels(),
            'operations': [op.to_dict() for op in self.operations],
            'environment_resources': self.settings.environment_resources,
            'blue_green': self.settings.to_dict(),
            'alarms': [alarm.to_dict() for alarm in self.alarms],
            'image': self.image,
        }


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(',', ':'))


def task_definition_changed(current: Optional[Dict[str, Any]], new: Dict[str, Any]) -> bool:
    """Any difference in the task definition replaces the environment"""
    if current is None:
        return True
    return canonical_json(current) != canonical_json(new)


def pseudo_parameters(stack_name: str, region: str, account_id: str, partition: str) -> Dict[str, str]:
    return dict(zip(PSEUDO_PARAMETERS, (region, stack_name, account_id, partition)))


class ResourceGraphCompiler:
    """Compiler from parsed templates to ordered resource plans"""

    def __init__(self, region: str = 'us-east-1', account_id: str = '000000000000',
                 partition: str = 'aws'):
        self.region = region
        self.account_id = account_id
        self.partition = partition
        self.validator = TemplateValidator()

    def compile(self, template: Template, stack_name: str) -> CompiledStack:
        """
        Validate and compile a template.

        Raises:
            TemplateValidationError: If the template is not a valid blue-green template
            TemplateCompileError: If the dependency graph has a cycle
        """
        settings = self.validator.validate(template)
        parameters = dict(template.parameters)
        parameters.update(pseudo_parameters(stack_name, self.region, self.account_id, self.partition))

        graph = ResourceGraph.from_resources(template.resources)
        environment_ids = set(settings.environment_resources)
        shared_ids = set(template.resources) - environment_ids

        # Full-graph ordering catches cycles that pass through environment resources
        graph.levels()

        operations = []
        for level, group in enumerate(graph.subgraph(shared_ids).levels()):
            for logical_id in group:
                resource = template.resources[logical_id]
                operations.append(ResourceOperation(
                    action='create',
                    logical_id=logical_id,
                    resource_type=resource['Type'],
                    properties=resolve_value(resource.get('Properties') or {}, parameters, partial=True),
                    level=level,
                ))

        task_definition = resolve_value(
            template.resources[settings.task_definitions[BLUE]].get('Properties') or {},
            parameters, partial=True
        )
        task_set = resolve_value(
            template.resources[settings.task_sets[BLUE]].get('Properties') or {},
            parameters, partial=True
        )

        alarms = self._compile_alarms(template, settings, parameters)

        logger.info(
            f"Compiled stack {stack_name}: {len(operations)} shared resources, "
            f"{len(alarms)} alarms, {settings.traffic_routing_type} "
            f"{settings.canary_percent}% / bake {settings.bake_seconds}s"
        )

        return CompiledStack(
            stack_name=stack_name,
            template=template,
            settings=settings,
            graph=graph,
            operations=operations,
            alarms=alarms,
            task_definition=task_definition,
            task_set=task_set,
            parameters=parameters,
            outputs=template.outputs,
        )

    def _compile_alarms(self, template: Template, settings: BlueGreenSettings,
                        parameters: Dict[str, str]) -> List[AlarmSpec]:
        """Bind each alarm to the color of the target group in its dimensions"""
        alarms = []
        for logical_id in sorted(template.resources):
            resource = template.resources[logical_id]
            if resource.get('Type') != ALARM_TYPE:
                continue
            properties = resource.get('Properties') or {}

            target_group = None
            for dimension in properties.get('Dimensions') or []:
                if not isinstance(dimension, dict) or dimension.get('Name') != 'TargetGroup':
                    continue
                references = find_references(dimension.get('Value'))
                matches = [ref for ref in references if settings.color_of_target_group(ref)]
                if matches:
                    target_group = matches[0]

            if target_group is None:
                logger.warning(f"Alarm {logical_id} is not scoped to a blue-green target group; ignoring")
                continue

            alarm_name = resolve_value(properties.get('AlarmName', logical_id), parameters, partial=True)
            if not isinstance(alarm_name, str):
                alarm_name = logical_id

            try:
                alarms.append(AlarmSpec(
                    logical_id=logical_id,
                    alarm_name=alarm_name,
                    color=settings.color_of_target_group(target_group),
                    target_group=target_group,
                    metric_name=properties['MetricName'],
                    namespace=properties.get('Namespace', 'AWS/ApplicationELB'),
                    statistic=properties.get('Statistic', 'Average'),
                    comparison=properties['ComparisonOperator'],
                    threshold=float(properties['Threshold']),
                    period_seconds=int(properties.get('Period', 300)),
                    evaluation_periods=int(properties.get('EvaluationPeriods', 1)),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise TemplateCompileError(f"Alarm '{logical_id}' is incomplete: {e}")

        return alarms


def resolve(value: Any, parameters: Dict[str, str], attributes: Dict[str, Dict[str, Any]]) -> Any:
    """Fully resolve a fragment against provisioned resource attributes"""
    return resolve_value(value, parameters, attributes, partial=False)


def environment_task_set(compiled: CompiledStack, color: str) -> Dict[str, Any]:
    """
    Derive the task set template for a color slot from the blue one.

    The green task set is the blue task set pointed at the green task
    definition and the green target group.
    """
    settings = compiled.settings
    if color == BLUE:
        return compiled.task_set

    replacements = {
        settings.task_definitions[BLUE]: settings.task_definitions[GREEN],
        settings.target_groups[BLUE]: settings.target_groups[GREEN],
    }

    def rewrite(value):
        if isinstance(value, dict):
            if len(value) == 1 and 'Ref' in value and value['Ref'] in replacements:
                return {'Ref': replacements[value['Ref']]}
            return {k: rewrite(v) for k, v in value.items()}
        if isinstance(value, list):
            return [rewrite(item) for item in value]
        return value

    return rewrite(compiled.task_set)
