# coordination_gateway/__init__.py
"""
Coordination Gateway

An MCP gateway that exposes multi-agent coordination (conversation
lifecycle, message routing, conflict resolution and shared context with
versioning and rollback) as callable tools.
"""

__version__ = "1.0.0"
__author__ = "Coordination Gateway Team"
__description__ = "MCP gateway for multi-agent coordination"
