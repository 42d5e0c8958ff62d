"""Failure handling for simulated nodes."""

from edgesim.failures.recovery import RecoveryStateMachine, RecoveryTarget

__all__ = ['RecoveryStateMachine', 'RecoveryTarget']
