"""
rollgate - zero-downtime rolling deployments for containerised web apps.

- rollgate.core: errors, logging, settings
- rollgate.deploy: rolling engine, health gate, migrations, upstream sync
- rollgate.cli: the ``rollgate`` command
"""

__version__ = "0.1.0"
