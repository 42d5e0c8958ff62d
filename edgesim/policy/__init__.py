"""Device selection policies."""

from edgesim.policy.balancer import LoadBalancer, LoadBalancingStrategy, parse_strategy, select_device

__all__ = ['LoadBalancer', 'LoadBalancingStrategy', 'parse_strategy', 'select_device']
