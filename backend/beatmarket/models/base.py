"""
Shared Pydantic base classes.

Two families of models live in this package:
- document models mirror MongoDB records and alias ``id`` to ``_id``
- API models are serialized with camelCase field names
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Base for models persisted in MongoDB."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
    )


class CamelModel(BaseModel):
    """Base for request and response bodies exchanged as camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
    )
