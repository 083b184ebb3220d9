"""
Feature modules live under this package.

Each module owns its models, service functions, JSON API blueprint and admin
pages, while reusing platform primitives (auth, RBAC, tenancy, activity log,
storage, DB session).
"""
