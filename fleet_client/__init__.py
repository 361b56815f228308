"""
Fleet Client module.

Thin `requests` wrapper around the fleet server's HTTP API.
"""
