from enum import Enum as PyEnum
from typing import Type

from sqlalchemy import Enum


def str_enum(enum_cls: Type[PyEnum], name: str) -> Enum:
    """Portable VARCHAR-backed enum storing member values, not names."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )
