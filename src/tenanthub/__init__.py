"""tenanthub - provisioning orchestrator for single-tenant instances."""

__version__ = "0.1.0"
