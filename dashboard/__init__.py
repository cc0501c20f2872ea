"""
Dashboard Package.

HTTP surface of the managed wealth control plane.

Modules:
- main: FastAPI application factory and error rendering
- schemas: Request/response models
- dependencies: Container access and admin auth
- routers/: Subscription, liquidation and settlement endpoints
"""
