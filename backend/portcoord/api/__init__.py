"""
Port Coordinator - API Package
==============================

FastAPI routers over the coordination engine.
"""
