from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class PlanetEngineError(Exception):
    pass


class InvalidConfiguration(PlanetEngineError, ValueError):
    """A rules model is missing fields or holds out-of-range values."""


class InvalidInput(PlanetEngineError, ValueError):
    """A supplied grid does not match the configuration it is used with."""


class CoreInvariantViolation(PlanetEngineError, RuntimeError):
    """The algorithm cannot satisfy an internal precondition for these parameters."""


def parse_rules(model: type[ModelT], payload: Any) -> ModelT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        messages = [f"{'.'.join(str(part) for part in err['loc']) or model.__name__}: {err['msg']}" for err in exc.errors()]
        raise InvalidConfiguration("; ".join(messages)) from exc
