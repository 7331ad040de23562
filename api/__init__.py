"""
Operational FastAPI application for the tool server's resilience subsystem.

Main components:
- main: application factory with lifespan management and error handling
- schemas: Pydantic models for request/response validation
- routes: health, alerts and recovery routes
- dependencies: access to the process runtime
"""

__version__ = "1.0.0"
