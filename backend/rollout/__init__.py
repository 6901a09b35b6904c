"""
Rollout module for bgshift

Blue-green canary rollouts of container services described by templates.

Components:
    - template_parser / intrinsics: YAML templates, parameters and intrinsic functions
    - template_validator: blue-green hook validation
    - resource_graph: dependency-ordered provisioning plans
    - state_machine: rollout phases and the commitment point
    - traffic_router: weighted forward configs on the load balancer
    - alarm_monitor: threshold alarms on target group metrics
    - environments / rollback: environment lifecycle and rollback
    - scheduler: durable timers
    - executor: rollout orchestration
    - routes: API endpoints
"""

from .state_machine import RolloutStateMachine
from .template_parser import TemplateParser, TemplateError, TemplateParseError
from .template_validator import TemplateValidator, TemplateValidationError
from .resource_graph import ResourceGraphCompiler, CompiledStack, TemplateCompileError
from .traffic_router import TrafficRouter, LoadBalancerBackend, InMemoryLoadBalancer
from .alarm_monitor import AlarmMonitor, MetricSource, InMemoryMetricSource
from .platform import ContainerPlatform, InMemoryPlatform, PlatformError
from .scheduler import DurableScheduler
from .validation_hooks import ValidationHookRunner
from .executor import RolloutExecutor, SubmitResult
from . import routes

__all__ = [
    "RolloutStateMachine",
    "TemplateParser",
    "TemplateError",
    "TemplateParseError",
    "TemplateValidator",
    "TemplateValidationError",
    "ResourceGraphCompiler",
    "CompiledStack",
    "TemplateCompileError",
    "TrafficRouter",
    "LoadBalancerBackend",
    "InMemoryLoadBalancer",
    "AlarmMonitor",
    "MetricSource",
    "InMemoryMetricSource",
    "ContainerPlatform",
    "InMemoryPlatform",
    "PlatformError",
    "DurableScheduler",
    "ValidationHookRunner",
    "RolloutExecutor",
    "SubmitResult",
    "routes",
]
