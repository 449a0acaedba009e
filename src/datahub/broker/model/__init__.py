"""
Database Models

This package defines the database models for the broker using SQLAlchemy ORM.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- users.py: User identities created on first primary sign-in
- credentials.py: Stored OAuth grants per (user, provider, account)
- health.py: Health monitoring gauge

The data models follow these relationships:
- User: Identified by a unique email, owns any number of provider credentials
- ProviderCredential: One row per physical external account per user, enforced by
  unique indexes rather than by read-then-write checks

The models use SQLAlchemy's async interface for non-blocking database operations.
"""
