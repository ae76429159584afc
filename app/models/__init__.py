"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `app/main.py` (job workers, one-off scripts).
"""

# Import side-effects: register ORM mappings.
from app.models import (  # noqa: F401
    background_job,
    billing,
)
