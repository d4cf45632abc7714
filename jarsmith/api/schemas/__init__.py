"""Pydantic schemas returned by the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

__all__ = ["OrmOutModel"]


class OrmOutModel(BaseModel):
    """Base model for API responses validated from attribute-based objects.

    Routers mostly hand over the frozen dataclasses produced by the job store
    and the override applier; ``from_attributes`` lets Pydantic read them via
    ``getattr()`` instead of requiring dict inputs.
    """

    model_config = ConfigDict(from_attributes=True)
