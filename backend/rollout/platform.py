"""
ContainerPlatform abstraction layer for the rollout system.

Provides a unified interface to the container platform that runs
environments and the shared infrastructure around them:
- shared resources (security groups, roles, load balancer, target groups,
  listeners, alarms, log groups, the service) created from template
  properties
- task definitions and task sets, which make up an environment

Only the in-memory driver ships with bgshift. It keeps every object in
process memory and is used by the test suite and local experiments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set
import logging
import secrets

logger = logging.getLogger(__name__)

STEADY = 'STEADY'
PROVISIONING = 'PROVISIONING'
FAILED = 'FAILED'


class PlatformError(Exception):
    """Raised when the platform rejects an operation"""
    pass


@dataclass
class ProvisionedResource:
    """Physical identity of a created resource"""
    physical_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def attribute_map(self) -> Dict[str, Any]:
        """Attributes as seen by Ref / Fn::GetAtt"""
        attributes = dict(self.attributes)
        attributes['Ref'] = self.physical_id
        return attributes


@dataclass
class TaskSetStatus:
    task_set_id: str
    status: str  # PROVISIONING | STEADY | FAILED
    running_count: int
    desired_count: int
    reason: Optional[str] = None

    @property
    def is_steady(self) -> bool:
        return self.status == STEADY and self.running_count >= self.desired_count

    @property
    def is_failed(self) -> bool:
        return self.status == FAILED


class ContainerPlatform(ABC):
    """
    Abstract interface to the container platform.

    All provisioning goes through this interface so that the rollout
    executor does not depend on a particular cloud SDK.
    """

    @abstractmethod
    async def create_resource(self, stack_name: str, logical_id: str, resource_type: str,
                              properties: Dict[str, Any]) -> ProvisionedResource:
        """
        Create one shared resource from fully resolved properties.

        Raises:
            PlatformError: If the platform rejects the resource
        """
        pass

    @abstractmethod
    async def register_task_definition(self, stack_name: str, properties: Dict[str, Any]) -> str:
        """
        Register a task definition revision.

        Returns:
            Task definition id
        """
        pass

    @abstractmethod
    async def deregister_task_definition(self, task_definition_id: str) -> None:
        pass

    @abstractmethod
    async def create_task_set(self, stack_name: str, properties: Dict[str, Any]) -> str:
        """
        Start a task set and register it with its target group.

        Returns:
            Task set id
        """
        pass

    @abstractmethod
    async def describe_task_set(self, task_set_id: str) -> TaskSetStatus:
        pass

    @abstractmethod
    async def delete_task_set(self, task_set_id: str) -> None:
        """Stop a task set (missing task sets are not an error)"""
        pass

    @abstractmethod
    async def set_primary_task_set(self, service_id: str, task_set_id: str) -> None:
        pass


def _suffix() -> str:
    return secrets.token_hex(4)


class InMemoryPlatform(ContainerPlatform):
    """
    Platform simulation.

    Task sets become steady after `steady_after_polls` describe calls.
    Images listed in `failing_images` produce FAILED task sets, images in
    `stalled_images` never become steady.
    """

    def __init__(self, region: str = 'us-east-1', account_id: str = '000000000000',
                 steady_after_polls: int = 1):
        self.region = region
        self.account_id = account_id
        self.steady_after_polls = steady_after_polls
        self.failing_images: Set[str] = set()
        self.stalled_images: Set[str] = set()
        self.failing_resource_types: Set[str] = set()
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.task_definitions: Dict[str, Dict[str, Any]] = {}
        self.task_sets: Dict[str, Dict[str, Any]] = {}
        self.primary_task_sets: Dict[str, str] = {}

    def _arn(self, service: str, resource: str) -> str:
        return f"arn:aws:{service}:{self.region}:{self.account_id}:{resource}"

    async def create_resource(self, stack_name: str, logical_id: str, resource_type: str,
                              properties: Dict[str, Any]) -> ProvisionedResource:
        if resource_type in self.failing_resource_types:
            raise PlatformError(f"Failed to create {resource_type} {logical_id}")

        suffix = _suffix()
        name = f"{stack_name}-{logical_id}"
        attributes: Dict[str, Any] = {}

        if resource_type == 'AWS::ElasticLoadBalancingV2::LoadBalancer':
            arn = self._arn('elasticloadbalancing', f"loadbalancer/app/{name}/{suffix}")
            physical_id = arn
            attributes = {
                'DNSName': f"{name}-{suffix}.{self.region}.elb.amazonaws.com".lower(),
                'LoadBalancerFullName': f"app/{name}/{suffix}",
                'LoadBalancerName': name,
            }
        elif resource_type == 'AWS::ElasticLoadBalancingV2::TargetGroup':
            physical_id = self._arn('elasticloadbalancing', f"targetgroup/{name}/{suffix}")
            attributes = {
                'TargetGroupFullName': f"targetgroup/{name}/{suffix}",
                'TargetGroupName': name,
            }
        elif resource_type == 'AWS::ElasticLoadBalancingV2::Listener':
            physical_id = self._arn('elasticloadbalancing', f"listener/app/{stack_name}/{suffix}")
            attributes = {'ListenerArn': physical_id}
        elif resource_type == 'AWS::EC2::SecurityGroup':
            physical_id = f"sg-{suffix}"
            attributes = {'GroupId': physical_id}
        elif resource_type == 'AWS::IAM::Role':
            physical_id = name
            attributes = {'Arn': f"arn:aws:iam::{self.account_id}:role/{name}"}
        elif resource_type == 'AWS::Logs::LogGroup':
            physical_id = properties.get('LogGroupName') or name
            attributes = {'Arn': self._arn('logs', f"log-group:{physical_id}")}
        elif resource_type == 'AWS::ECS::Service':
            physical_id = self._arn('ecs', f"service/{properties.get('Cluster', 'default')}/{name}")
            attributes = {'Name': name, 'ServiceArn': physical_id}
        else:
            physical_id = f"{name}-{suffix}"

        self.resources[physical_id] = {
            'stack_name': stack_name,
            'logical_id': logical_id,
            'type': resource_type,
            'properties': properties,
        }
        logger.debug(f"Created {resource_type} {logical_id} as {physical_id}")
        return ProvisionedResource(physical_id=physical_id, attributes=attributes)

    async def register_task_definition(self, stack_name: str, properties: Dict[str, Any]) -> str:
        family = properties.get('Family') or stack_name
        revision = 1 + sum(1 for td in self.task_definitions.values() if td['family'] == family)
        task_definition_id = self._arn('ecs', f"task-definition/{family}:{revision}")
        self.task_definitions[task_definition_id] = {'family': family, 'properties': properties}
        return task_definition_id

    async def deregister_task_definition(self, task_definition_id: str) -> None:
        self.task_definitions.pop(task_definition_id, None)

    def _image_of(self, task_definition_id: str) -> Optional[str]:
        task_definition = self.task_definitions.get(task_definition_id) or {}
        containers = (task_definition.get('properties') or {}).get('ContainerDefinitions') or []
        return containers[0].get('Image') if containers else None

    async def create_task_set(self, stack_name: str, properties: Dict[str, Any]) -> str:
        task_definition_id = properties.get('TaskDefinition')
        if task_definition_id not in self.task_definitions:
            raise PlatformError(f"Unknown task definition: {task_definition_id}")

        task_set_id = f"ecs-svc/{secrets.randbelow(10 ** 18):018d}"
        scale = properties.get('Scale') or {}
        desired = max(1, int(scale.get('Value', 100)) // 100) if scale.get('Unit', 'PERCENT') == 'PERCENT' else 1
        self.task_sets[task_set_id] = {
            'stack_name': stack_name,
            'properties': properties,
            'image': self._image_of(task_definition_id),
            'polls': 0,
            'desired': desired,
        }
        return task_set_id

    async def describe_task_set(self, task_set_id: str) -> TaskSetStatus:
        task_set = self.task_sets.get(task_set_id)
        if task_set is None:
            return TaskSetStatus(task_set_id, FAILED, 0, 0, reason='Task set not found')

        task_set['polls'] += 1
        desired = task_set['desired']
        image = task_set['image']

        if image in self.failing_images:
            return TaskSetStatus(task_set_id, FAILED, 0, desired,
                                 reason=f"Essential container exited: CannotPullContainerError {image}")
        if image in self.stalled_images or task_set['polls'] < self.steady_after_polls:
            return TaskSetStatus(task_set_id, PROVISIONING, 0, desired)
        return TaskSetStatus(task_set_id, STEADY, desired, desired)

    async def delete_task_set(self, task_set_id: str) -> None:
        self.task_sets.pop(task_set_id, None)

    async def set_primary_task_set(self, service_id: str, task_set_id: str) -> None:
        if task_set_id not in self.task_sets:
            raise PlatformError(f"Unknown task set: {task_set_id}")
        self.primary_task_sets[service_id] = task_set_id
