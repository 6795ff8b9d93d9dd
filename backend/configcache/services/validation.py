"""Input checks shared by the engine and the event bus. None of them perform I/O."""

import re
from typing import Any, Optional

from ..exceptions import ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


def validate_identifiers(tenant_id: Any, config_id: Any) -> None:
    """
    Raises:
        ValidationError: If either identifier is not a non-empty alphanumeric string
    """
    for identifier in (tenant_id, config_id):
        if not isinstance(identifier, str) or not IDENTIFIER_PATTERN.fullmatch(identifier):
            raise ValidationError("Tenant ID and Config ID must be alphanumeric")


def validate_path(path: Any) -> None:
    if not isinstance(path, str) or not path.startswith("/"):
        raise ValidationError("Path must start with /")


def validate_page(limit: Optional[int], offset: Optional[int]) -> None:
    if limit is not None and limit < 0:
        raise ValidationError("limit must be non-negative")
    if offset is not None and offset < 0:
        raise ValidationError("offset must be non-negative")
