"""
Port Coordinator
================

Coordination core for independent coding-agent workers: dependency
resolution, resource locks, escalation triggers and feedback loops.
"""

__version__ = "0.1.0"
