"""
Scripts Package.

This package contains operational scripts for the settlement engine.

Scripts:
- bootstrap_db: Database initialization and paper-account seeding
"""
