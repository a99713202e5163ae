"""Fallible factories for domain values.

``build`` constructs any pydantic domain model and never raises for invalid
input: it returns a ``Result`` whose failure carries *every* violated rule,
each as ``{"field": <dotted path>, "code": <rule code>, "message": ...}``.
"""

import logging
from typing import Any, Type, TypeVar

from pydantic import BaseModel, RootModel
from pydantic import ValidationError as PydanticValidationError

from clinical_vault.domain.errors import ValidationError
from clinical_vault.domain.ports import Result

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def violations_from(error: PydanticValidationError) -> list[dict]:
    """Flatten a pydantic error into field/code/message dictionaries."""
    violations = []
    for item in error.errors():
        loc = [str(part) for part in item.get("loc", ()) if part != "root"]
        violations.append({
            "field": ".".join(loc) or "__root__",
            "code": item.get("type", "invalid"),
            "message": item.get("msg", ""),
        })
    return violations


def build(model: Type[M], data: Any = None, **fields: Any) -> Result[M]:
    """Construct ``model`` from ``data`` (or keyword ``fields``).

    Root-model values (identifiers, CPF, phone, ...) take a positional value;
    regular models take a mapping or keyword arguments.
    """
    try:
        if issubclass(model, RootModel):
            value = model(data)
        else:
            payload = dict(data or {})
            payload.update(fields)
            value = model.model_validate(payload)
        return Result.success_result(value)
    except PydanticValidationError as e:
        violations = violations_from(e)
        logger.debug(f"{model.__name__} rejected with {len(violations)} violation(s)")
        return Result.failure_result(
            f"Invalid {model.__name__}: " + "; ".join(f"{v['field']}: {v['message']}" for v in violations),
            error_type="ValidationError",
            error_details={"violations": violations},
        )


def build_or_raise(model: Type[M], data: Any = None, **fields: Any) -> M:
    """Like ``build`` but raises the domain ``ValidationError`` with all violations."""
    result = build(model, data, **fields)
    if result.is_failure():
        violations = result.error_details["violations"]
        raise ValidationError(
            result.error,
            field=violations[0]["field"] if violations else None,
            violations=violations,
        )
    return result.value
