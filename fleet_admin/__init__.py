"""
Fleet Admin module.

Click command line for managing templates and workers.
"""
