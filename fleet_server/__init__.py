"""
Fleet Server module.

HTTP surface of the pool controller, built with FastAPI.
"""
