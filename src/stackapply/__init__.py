"""Declarative infrastructure provisioning: model, plan, apply, persist."""

__version__ = "0.1.0"
