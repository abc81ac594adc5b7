from tenanthub.adapters.health.http import HttpHealthCheckVerifier

__all__ = ["HttpHealthCheckVerifier"]
