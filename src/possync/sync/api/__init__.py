"""HTTP surface for POS sync: router, schemas, dependencies."""

from .router import router

__all__ = ["router"]
