"""
Environment variable declarations.

Each setting is declared once as an ``EnvVarSpec``; ``parse`` reads and
converts it, ``validate`` checks a list of specs at startup and logs every
problem (secret values are never logged).
"""

import logging
import os
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

logger = logging.getLogger(__name__)


class EnvVarSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


class MissingEnvVarError(ValueError):
    pass


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    value = _raw(spec)
    if value is None:
        if spec.is_optional:
            return None
        raise MissingEnvVarError(f"Missing required environment variable {spec.id}")
    return spec.parse(value)


def validate(specs: List[EnvVarSpec]) -> bool:
    """Parse every spec and type-check the results; returns False on any error."""
    ok = True
    values = {}
    fields = {}
    for spec in specs:
        try:
            value = parse(spec)
        except Exception as e:
            # Parser messages may echo the raw value
            if spec.is_secret:
                logger.error(f"Invalid value <secret> for {spec.id}")
            else:
                logger.error(f"Invalid value {_raw(spec)!r} for {spec.id}: {e}")
            ok = False
            continue
        if value is None:
            continue
        values[spec.id] = value
        fields[spec.id] = spec.type

    if fields:
        model = create_model("EnvConf", **fields)
        try:
            model(**values)
        except ValidationError as e:
            for err in e.errors():
                logger.error(f"Invalid environment variable {err['loc'][0]}: {err['msg']}")
            ok = False
    return ok
