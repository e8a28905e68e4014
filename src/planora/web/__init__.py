"""
Planora - Web Package.

FastAPI application and the shared auth dependencies.
"""
