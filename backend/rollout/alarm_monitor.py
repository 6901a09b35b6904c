"""
Health alarm monitor.

Evaluates threshold alarms bound to a stack's target groups against a
metric source. An alarm is in ALARM when every one of its last
`evaluation_periods` datapoints breaches the threshold, OK when enough
datapoints exist and at least one does not breach, and INSUFFICIENT_DATA
otherwise. INSUFFICIENT_DATA never aborts a rollout.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging

from database import AlarmState, StackResource
from event_bus import Event, EventType

logger = logging.getLogger(__name__)


class AlarmStateValue(str, Enum):
    OK = "OK"
    ALARM = "ALARM"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


COMPARISONS: Dict[str, Callable[[float, float], bool]] = {
    'GreaterThanOrEqualToThreshold': lambda value, threshold: value >= threshold,
    'GreaterThanThreshold': lambda value, threshold: value > threshold,
    'LessThanThreshold': lambda value, threshold: value < threshold,
    'LessThanOrEqualToThreshold': lambda value, threshold: value <= threshold,
}

STATISTICS: Dict[str, Callable[[List[float]], float]] = {
    'Average': lambda values: sum(values) / len(values),
    'Sum': sum,
    'Minimum': min,
    'Maximum': max,
    'SampleCount': lambda values: float(len(values)),
}


class MetricSource(ABC):
    """Abstract interface to the metrics backend"""

    @abstractmethod
    async def get_datapoints(self, metric_name: str, target_group: str, statistic: str,
                             period_seconds: int, periods: int,
                             end_time: datetime) -> List[Optional[float]]:
        """
        Aggregate the metric over consecutive periods ending at end_time.

        Returns:
            One value per period, oldest first; None where the period has no samples
        """
        pass


class InMemoryMetricSource(MetricSource):
    """Metric store fed by tests and the in-memory driver"""

    def __init__(self):
        self._samples: Dict[Tuple[str, str], List[Tuple[datetime, float]]] = defaultdict(list)

    def put(self, metric_name: str, target_group: str, value: float, timestamp: datetime) -> None:
        self._samples[(metric_name, target_group)].append((timestamp, float(value)))

    def clear(self) -> None:
        self._samples.clear()

    async def get_datapoints(self, metric_name: str, target_group: str, statistic: str,
                             period_seconds: int, periods: int,
                             end_time: datetime) -> List[Optional[float]]:
        aggregate = STATISTICS.get(statistic)
        if aggregate is None:
            raise ValueError(f"Unsupported statistic: {statistic}")

        samples = self._samples.get((metric_name, target_group), [])
        period = timedelta(seconds=period_seconds)
        datapoints = []
        for index in range(periods, 0, -1):
            start = end_time - period * index
            stop = start + period
            values = [value for timestamp, value in samples if start <= timestamp < stop]
            datapoints.append(aggregate(values) if values else None)
        return datapoints


@dataclass
class AlarmEvaluation:
    """Result of evaluating one alarm"""
    logical_id: str
    alarm_name: str
    color: str
    state: AlarmStateValue
    previous_state: AlarmStateValue
    reason: str
    datapoints: List[Optional[float]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.state != self.previous_state

    def to_dict(self) -> dict:
        return {
            'alarm': self.alarm_name,
            'logical_id': self.logical_id,
            'color': self.color,
            'old_state': self.previous_state.value,
            'new_state': self.state.value,
            'reason': self.reason,
            'datapoints': self.datapoints,
        }


def evaluate_datapoints(datapoints: List[Optional[float]], comparison: str, threshold: float,
                        evaluation_periods: int) -> Tuple[AlarmStateValue, str]:
    """
    Decide an alarm state from the most recent datapoints.

    Examples:
        >>> evaluate_datapoints([2.0, 3.0], 'GreaterThanOrEqualToThreshold', 1.0, 2)[0]
        <AlarmStateValue.ALARM: 'ALARM'>
        >>> evaluate_datapoints([None, 3.0], 'GreaterThanOrEqualToThreshold', 1.0, 2)[0]
        <AlarmStateValue.INSUFFICIENT_DATA: 'INSUFFICIENT_DATA'>
    """
    compare = COMPARISONS.get(comparison)
    if compare is None:
        raise ValueError(f"Unsupported comparison operator: {comparison}")

    recent = datapoints[-evaluation_periods:] if evaluation_periods else []
    present = [value for value in recent if value is not None]

    if len(present) < evaluation_periods:
        return (AlarmStateValue.INSUFFICIENT_DATA,
                f"{len(present)} of {evaluation_periods} datapoints available")

    breaching = [value for value in present if compare(value, threshold)]
    if len(breaching) == evaluation_periods:
        return (AlarmStateValue.ALARM,
                f"{evaluation_periods} datapoints {present} breached {comparison} {threshold}")
    return (AlarmStateValue.OK,
            f"{len(breaching)} of {evaluation_periods} datapoints {present} breached {comparison} {threshold}")


class AlarmMonitor:
    """Evaluates and tracks the alarms bound to blue-green stacks"""

    def __init__(self, db, metric_source: MetricSource, event_bus=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.metric_source = metric_source
        self.event_bus = event_bus
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def register_alarms(self, session, stack_name: str, alarms) -> None:
        """
        Upsert the alarm definitions of a stack (caller commits).

        Alarms no longer in the template are dropped. State of unchanged
        alarms is kept.
        """
        existing = {
            row.logical_id: row
            for row in session.query(AlarmState).filter_by(stack_name=stack_name).all()
        }
        wanted = {alarm.logical_id for alarm in alarms}

        for logical_id, row in existing.items():
            if logical_id not in wanted:
                session.delete(row)

        for alarm in alarms:
            row = existing.get(alarm.logical_id)
            if row is None:
                row = AlarmState(stack_name=stack_name, logical_id=alarm.logical_id)
                session.add(row)
            row.alarm_name = alarm.alarm_name
            row.color = alarm.color
            row.target_group = alarm.target_group
            row.metric_name = alarm.metric_name
            row.statistic = alarm.statistic
            row.comparison = alarm.comparison
            row.threshold = alarm.threshold
            row.period_seconds = alarm.period_seconds
            row.evaluation_periods = alarm.evaluation_periods

    async def evaluate(self, alarm: AlarmState, dimension: str) -> AlarmEvaluation:
        """Evaluate a single alarm without persisting the result"""
        datapoints = await self.metric_source.get_datapoints(
            alarm.metric_name, dimension, alarm.statistic,
            alarm.period_seconds, alarm.evaluation_periods, self.clock(),
        )
        state, reason = evaluate_datapoints(
            datapoints, alarm.comparison, alarm.threshold, alarm.evaluation_periods
        )
        return AlarmEvaluation(
            logical_id=alarm.logical_id,
            alarm_name=alarm.alarm_name,
            color=alarm.color,
            state=state,
            previous_state=AlarmStateValue(alarm.state or AlarmStateValue.INSUFFICIENT_DATA.value),
            reason=reason,
            datapoints=datapoints,
        )

    async def evaluate_stack(self, stack_name: str, rollout_id: Optional[str] = None) -> List[AlarmEvaluation]:
        """
        Evaluate every alarm of a stack, persist state changes and emit
        ALARM_STATE_CHANGED for each one.
        """
        with self.db.get_session() as session:
            alarms = session.query(AlarmState).filter_by(
                stack_name=stack_name
            ).order_by(AlarmState.logical_id).all()
            resources = {
                row.logical_id: row
                for row in session.query(StackResource).filter_by(stack_name=stack_name).all()
            }

        evaluations = []
        for alarm in alarms:
            resource = resources.get(alarm.target_group)
            if resource is None:
                logger.warning(f"Alarm {alarm.alarm_name}: target group {alarm.target_group} not provisioned")
                continue
            dimension = resource.attributes.get('TargetGroupFullName', resource.physical_id)
            try:
                evaluations.append(await self.evaluate(alarm, dimension))
            except Exception as e:
                # A broken metric query is treated as missing data
                logger.error(f"Error evaluating alarm {alarm.alarm_name}: {e}", exc_info=True)

        changed = [evaluation for evaluation in evaluations if evaluation.changed]
        if changed:
            with self.db.get_session() as session:
                for evaluation in changed:
                    row = session.query(AlarmState).filter_by(
                        stack_name=stack_name, logical_id=evaluation.logical_id
                    ).first()
                    if row is not None:
                        row.state = evaluation.state.value
                        row.reason = evaluation.reason
                session.commit()

        for evaluation in changed:
            logger.info(
                f"Alarm {evaluation.alarm_name} ({stack_name}): "
                f"{evaluation.previous_state.value} -> {evaluation.state.value}"
            )
            if self.event_bus:
                await self.event_bus.emit(Event(
                    event_type=EventType.ALARM_STATE_CHANGED,
                    stack_name=stack_name,
                    rollout_id=rollout_id,
                    data=evaluation.to_dict(),
                ))

        return evaluations
