"""
Risk package.

Endpoint error breakers and the risk pause / release policy.
"""

from automine.risk.circuit_breaker import CircuitBreakerConfig, EndpointBreaker, RateLimitWatch
from automine.risk.risk_guard import RiskGuard, RiskPause

__all__ = [
    "CircuitBreakerConfig",
    "EndpointBreaker",
    "RateLimitWatch",
    "RiskGuard",
    "RiskPause",
]
