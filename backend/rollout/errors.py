"""
Rollout error taxonomy.

Failures (subclasses of RolloutFailure) abort an in-flight rollout and roll
traffic back to the previous stable environment. They are never retried;
a new deployment submission is required.

The remaining errors are operational: they reject a request or a state
change without touching traffic.
"""


class RolloutError(Exception):
    """Base class for all rollout errors"""
    pass


class RolloutFailure(RolloutError):
    """A failure that aborts the rollout"""
    kind = 'RolloutFailure'


class ProvisioningFailure(RolloutFailure):
    """New environment never reached a healthy, steady running count"""
    kind = 'ProvisioningFailure'


class ValidationHookFailure(RolloutFailure):
    """Test-traffic validation hook reported failure or could not be reached"""
    kind = 'ValidationHookFailure'


class HealthAlarmTriggered(RolloutFailure):
    """A bound alarm went into ALARM while production traffic was shifting"""
    kind = 'HealthAlarmTriggered'


class TimeoutExceeded(RolloutFailure):
    """A phase exceeded its configured bound"""
    kind = 'TimeoutExceeded'


class OperatorCancelled(RolloutFailure):
    """Rollout cancelled by an operator"""
    kind = 'OperatorCancelled'


class RolloutInProgressError(RolloutError):
    """Another rollout already owns the stack"""
    pass


class StaleRolloutError(RolloutError):
    """Rollout or stack record changed since it was read (version mismatch)"""
    pass


class InvalidTransitionError(RolloutError):
    """Requested phase change is not allowed from the current phase"""
    pass


class InvalidWeightsError(RolloutError):
    """Weight map is not a valid forward configuration for the listener"""
    pass


class EnvironmentInUseError(RolloutError):
    """Environment still receives production traffic and cannot be deleted"""
    pass


class RolloutNotFoundError(RolloutError):
    pass


class StackNotReadyError(RolloutError):
    """Stack is still being created or its creation failed"""
    pass
