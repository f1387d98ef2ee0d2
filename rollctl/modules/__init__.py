"""
Upgrade orchestration modules.
"""
from .clock import Clock, FakeClock, RealClock
from .context import OperationContext
from .models import Node, NodeRole, RolloutResult, UpgradeProgress

__all__ = [
    'Clock',
    'FakeClock',
    'RealClock',
    'OperationContext',
    'Node',
    'NodeRole',
    'RolloutResult',
    'UpgradeProgress',
]
