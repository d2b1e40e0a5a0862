"""
HTTP Input Plugin.

This plugin provides a REST API for cluster management.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
