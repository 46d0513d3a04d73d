"""Provision and manage vSphere virtual machines for configuration management runs."""

__version__ = "0.1.0"
