"""
Feature modules live under this package.

Each module owns its models, service functions and blueprint (admin.py),
and reuses the shared primitives next to the factory (auth, audit, DB session).
"""
