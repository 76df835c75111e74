"""
Basement Control Plane
======================

Provisioning and reconciliation engine for Basement hosting.

This package provides:
- DigitalOcean droplet provisioning with detached readiness polling
- Refund-driven instance teardown
- TLS certificate state reconciliation for customer domains
- Fleet sync between the database and the cloud provider
"""

__version__ = "1.0.0"
