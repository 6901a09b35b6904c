"""
Blue-green template validator.

Checks that a parsed template describes a deployable blue-green service:
one blue-green hook naming a service, two task definition / task set
slots, two target groups and a production and a test listener, with a
traffic routing configuration the orchestrator can execute.

All problems are collected and reported together.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from .template_parser import Template, TemplateError, PSEUDO_PARAMETERS
from .intrinsics import find_references

logger = logging.getLogger(__name__)

BLUE = 'blue'
GREEN = 'green'
COLORS = (BLUE, GREEN)

HOOK_TYPE = 'AWS::CodeDeploy::BlueGreen'
TRANSFORM_NAME = 'AWS::CodeDeployBlueGreen'
SERVICE_TYPE = 'AWS::ECS::Service'
TASK_DEFINITION_TYPE = 'AWS::ECS::TaskDefinition'
TASK_SET_TYPE = 'AWS::ECS::TaskSet'
PRIMARY_TASK_SET_TYPE = 'AWS::ECS::PrimaryTaskSet'
TARGET_GROUP_TYPE = 'AWS::ElasticLoadBalancingV2::TargetGroup'
LISTENER_TYPE = 'AWS::ElasticLoadBalancingV2::Listener'
ALARM_TYPE = 'AWS::CloudWatch::Alarm'

DEFAULT_TERMINATION_WAIT_MINUTES = 5
MAX_WAIT_MINUTES = 2880


class TemplateValidationError(TemplateError):
    """Raised when template validation fails"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Template validation failed:\n" + "\n".join(f"- {e}" for e in errors))


@dataclass
class BlueGreenSettings:
    """Blue-green hook configuration extracted from a template"""
    hook_id: str
    service: str
    task_definitions: Dict[str, str]  # color -> logical id
    task_sets: Dict[str, str]
    target_groups: Dict[str, str]
    production_listener: str
    test_listener: str
    traffic_routing_type: str
    canary_percent: int
    bake_seconds: int
    termination_wait_seconds: int
    primary_task_sets: List[str] = field(default_factory=list)

    def color_of_target_group(self, target_group: str) -> Optional[str]:
        for color, logical_id in self.target_groups.items():
            if logical_id == target_group:
                return color
        return None

    @property
    def environment_resources(self) -> List[str]:
        """Logical ids that belong to an environment rather than the shared stack"""
        return [self.task_definitions[BLUE], self.task_sets[BLUE]] + list(self.primary_task_sets)

    def to_dict(self) -> dict:
        return {
            'service': self.service,
            'task_definitions': dict(self.task_definitions),
            'task_sets': dict(self.task_sets),
            'target_groups': dict(self.target_groups),
            'production_listener': self.production_listener,
            'test_listener': self.test_listener,
            'traffic_routing_type': self.traffic_routing_type,
            'canary_percent': self.canary_percent,
            'bake_seconds': self.bake_seconds,
            'termination_wait_seconds': self.termination_wait_seconds,
        }


def _as_int(value, name: str, errors: List[str], minimum: int, maximum: int) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an integer, got {value!r}")
        return None
    if number < minimum or number > maximum:
        errors.append(f"{name} must be between {minimum} and {maximum}, got {number}")
        return None
    return number


def _logical_id(entry) -> Optional[str]:
    """Hook entries are plain strings or {'LogicalID': ...} mappings"""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return entry.get('LogicalID')
    return None


class TemplateValidator:
    """Structural validator for blue-green templates"""

    def validate(self, template: Template) -> BlueGreenSettings:
        """
        Validate template structure and extract the blue-green settings.

        Raises:
            TemplateValidationError: With every problem found
        """
        errors: List[str] = []

        if TRANSFORM_NAME not in template.transforms:
            logger.warning(f"Template does not declare the {TRANSFORM_NAME} transform; assuming it")

        settings = self._validate_hook(template, errors)
        self._validate_references(template, errors)

        if settings is not None:
            self._validate_environment_isolation(template, settings, errors)
            self._validate_blue_task_set(template, settings, errors)

        if errors:
            raise TemplateValidationError(errors)

        return settings

    def _validate_hook(self, template: Template, errors: List[str]) -> Optional[BlueGreenSettings]:
        hooks = [
            (hook_id, hook) for hook_id, hook in template.hooks.items()
            if isinstance(hook, dict) and hook.get('Type') == HOOK_TYPE
        ]
        if len(hooks) != 1:
            errors.append(f"Template must declare exactly one {HOOK_TYPE} hook, found {len(hooks)}")
            return None

        hook_id, hook = hooks[0]
        properties = hook.get('Properties') or {}
        resources = template.resources

        # Traffic routing
        routing = properties.get('TrafficRoutingConfig') or {}
        routing_type = routing.get('Type', 'AllAtOnce')
        canary_percent, bake_seconds = 100, 0
        if routing_type == 'TimeBasedCanary':
            canary = routing.get('TimeBasedCanary') or {}
            percent = _as_int(canary.get('StepPercentage'), 'TimeBasedCanary.StepPercentage', errors, 1, 99)
            bake = _as_int(canary.get('BakeTimeMins'), 'TimeBasedCanary.BakeTimeMins', errors, 0, MAX_WAIT_MINUTES)
            if percent is not None:
                canary_percent = percent
            if bake is not None:
                bake_seconds = bake * 60
        elif routing_type == 'TimeBasedLinear':
            errors.append("TrafficRoutingConfig type 'TimeBasedLinear' is not supported")
        elif routing_type != 'AllAtOnce':
            errors.append(f"Unknown TrafficRoutingConfig type '{routing_type}'")

        options = properties.get('AdditionalOptions') or {}
        wait_minutes = _as_int(
            options.get('TerminationWaitTimeInMinutes', DEFAULT_TERMINATION_WAIT_MINUTES),
            'AdditionalOptions.TerminationWaitTimeInMinutes', errors, 0, MAX_WAIT_MINUTES
        )
        termination_wait_seconds = (wait_minutes if wait_minutes is not None else DEFAULT_TERMINATION_WAIT_MINUTES) * 60

        applications = properties.get('Applications') or []
        if len(applications) != 1:
            errors.append(f"Hook must target exactly one application, found {len(applications)}")
            return None
        application = applications[0] or {}

        target = application.get('Target') or {}
        service = target.get('LogicalID')
        if target.get('Type') != SERVICE_TYPE or not service:
            errors.append(f"Hook target must be an {SERVICE_TYPE} with a LogicalID")
        elif template.resource_type(service) != SERVICE_TYPE:
            errors.append(f"Hook target '{service}' is not a declared {SERVICE_TYPE}")

        ecs = application.get('ECSAttributes') or {}
        task_definitions = [_logical_id(e) for e in ecs.get('TaskDefinitions') or []]
        task_sets = [_logical_id(e) for e in ecs.get('TaskSets') or []]
        routing_attrs = ecs.get('TrafficRouting') or {}
        target_groups = [_logical_id(e) for e in routing_attrs.get('TargetGroups') or []]

        for label, ids in (('TaskDefinitions', task_definitions), ('TaskSets', task_sets),
                           ('TargetGroups', target_groups)):
            if len(ids) != 2 or not all(ids):
                errors.append(f"ECSAttributes.{label} must name exactly two logical ids (blue, green)")
                return None
            if ids[0] == ids[1]:
                errors.append(f"ECSAttributes.{label} must name two different logical ids")
                return None

        # Blue resources are declared; green ones are derived from them
        for label, ids, resource_type in (('task definition', task_definitions, TASK_DEFINITION_TYPE),
                                          ('task set', task_sets, TASK_SET_TYPE)):
            if template.resource_type(ids[0]) != resource_type:
                errors.append(f"Blue {label} '{ids[0]}' must be a declared {resource_type}")
            if ids[1] in resources:
                errors.append(f"Green {label} '{ids[1]}' must not be declared; it is derived from '{ids[0]}'")

        for logical_id in target_groups:
            if template.resource_type(logical_id) != TARGET_GROUP_TYPE:
                errors.append(f"Target group '{logical_id}' must be a declared {TARGET_GROUP_TYPE}")

        listeners = {}
        for route in ('ProdTrafficRoute', 'TestTrafficRoute'):
            logical_id = _logical_id(routing_attrs.get(route))
            if not logical_id:
                errors.append(f"TrafficRouting.{route} is required")
            elif template.resource_type(logical_id) != LISTENER_TYPE:
                errors.append(f"{route} '{logical_id}' must be a declared {LISTENER_TYPE}")
            listeners[route] = logical_id

        if listeners.get('ProdTrafficRoute') and listeners.get('ProdTrafficRoute') == listeners.get('TestTrafficRoute'):
            errors.append("Production and test traffic routes must use different listeners")

        primary_task_sets = sorted(
            logical_id for logical_id, resource in resources.items()
            if resource.get('Type') == PRIMARY_TASK_SET_TYPE
        )

        return BlueGreenSettings(
            hook_id=hook_id,
            service=service,
            task_definitions=dict(zip(COLORS, task_definitions)),
            task_sets=dict(zip(COLORS, task_sets)),
            target_groups=dict(zip(COLORS, target_groups)),
            production_listener=listeners.get('ProdTrafficRoute'),
            test_listener=listeners.get('TestTrafficRoute'),
            traffic_routing_type=routing_type,
            canary_percent=canary_percent,
            bake_seconds=bake_seconds,
            termination_wait_seconds=termination_wait_seconds,
            primary_task_sets=primary_task_sets,
        )

    def _validate_references(self, template: Template, errors: List[str]) -> None:
        known = set(template.parameters) | set(PSEUDO_PARAMETERS) | set(template.resources)

        for logical_id, resource in template.resources.items():
            for name in sorted(find_references(resource.get('Properties') or {}) - known):
                errors.append(f"Resource '{logical_id}' references unknown name '{name}'")

            depends_on = resource.get('DependsOn') or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            for name in depends_on:
                if name not in template.resources:
                    errors.append(f"Resource '{logical_id}' depends on undeclared resource '{name}'")

        for output_name, output in template.outputs.items():
            for name in sorted(find_references(output) - known):
                errors.append(f"Output '{output_name}' references unknown name '{name}'")

    def _validate_environment_isolation(self, template: Template, settings: BlueGreenSettings,
                                        errors: List[str]) -> None:
        """Shared resources outlive environments, so they must not depend on one"""
        scoped = set(settings.environment_resources)
        for logical_id, resource in template.resources.items():
            if logical_id in scoped:
                continue
            depends_on = resource.get('DependsOn') or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            references = find_references(resource.get('Properties') or {}) | set(depends_on)
            for name in sorted(references & scoped):
                errors.append(
                    f"Shared resource '{logical_id}' must not depend on environment resource '{name}'"
                )

    def _validate_blue_task_set(self, template: Template, settings: BlueGreenSettings,
                                errors: List[str]) -> None:
        task_set = template.resources.get(settings.task_sets[BLUE]) or {}
        properties = task_set.get('Properties') or {}

        if properties.get('TaskDefinition') != {'Ref': settings.task_definitions[BLUE]}:
            errors.append(
                f"Task set '{settings.task_sets[BLUE]}' must reference task definition "
                f"'{settings.task_definitions[BLUE]}'"
            )

        load_balancers = properties.get('LoadBalancers') or []
        bound = [lb.get('TargetGroupArn') for lb in load_balancers if isinstance(lb, dict)]
        if {'Ref': settings.target_groups[BLUE]} not in bound:
            errors.append(
                f"Task set '{settings.task_sets[BLUE]}' must register with target group "
                f"'{settings.target_groups[BLUE]}'"
            )
