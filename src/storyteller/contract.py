"""Structured reply contract between the session and the text backend.

The backend is handed the JSON schema produced here and is *expected* to
follow it. :meth:`OutputContract.parse` is the authoritative check: it turns
whatever text came back into either a :class:`Delta` or a :class:`ParseError`
and never raises.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

RESPONSE_FIELD = "response"

_TYPES: Dict[str, type] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
}


@dataclass(frozen=True)
class FieldSpec:
    type: str = "string"
    min_length: int = 0
    required: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class Delta:
    """A parsed reply: the conversational text plus the named delta fields."""

    response: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def context_delta(self) -> str:
        return str(self.fields.get("context") or "")

    @property
    def story_delta(self) -> str:
        return str(self.fields.get("story") or "")


@dataclass(frozen=True)
class ParseError:
    reason: Literal["malformed", "missing-required-field"]
    detail: str = ""
    field: Optional[str] = None


# -----------------------------
# Schema construction
# -----------------------------
def _normalize_specs(field_specs: Mapping[str, FieldSpec]) -> Dict[str, FieldSpec]:
    specs = dict(field_specs)
    current = specs.get(RESPONSE_FIELD)
    if current is None:
        specs[RESPONSE_FIELD] = FieldSpec(required=True, min_length=1)
    elif not current.required:
        specs[RESPONSE_FIELD] = FieldSpec(
            type=current.type,
            min_length=max(current.min_length, 1),
            required=True,
            description=current.description,
        )
    # response first keeps the rendered schema readable
    return {RESPONSE_FIELD: specs.pop(RESPONSE_FIELD), **specs}


def build_model(
    field_specs: Mapping[str, FieldSpec],
    *,
    title: str = "Story Response Format",
    examples: Optional[List[Dict[str, Any]]] = None,
) -> Type[BaseModel]:
    """Build a pydantic model that accepts exactly the declared fields."""
    definitions: Dict[str, Tuple[Any, Any]] = {}
    for name, spec in _normalize_specs(field_specs).items():
        py_type = _TYPES.get(spec.type)
        if py_type is None:
            raise ValueError(f"Unsupported field type {spec.type!r} for {name!r}")

        constraints: Dict[str, Any] = {}
        if spec.description:
            constraints["description"] = spec.description
        if py_type is str and spec.min_length > 0:
            constraints["min_length"] = spec.min_length

        if spec.required:
            definitions[name] = (py_type, Field(..., **constraints))
        elif py_type is str:
            definitions[name] = (str, Field(default="", **constraints))
        else:
            definitions[name] = (Optional[py_type], Field(default=None, **constraints))

    config = ConfigDict(
        title=title,
        extra="forbid",
        strict=True,
        json_schema_extra={"examples": examples} if examples else None,
    )
    return create_model("StoryReply", __config__=config, **definitions)


def build_schema(field_specs: Mapping[str, FieldSpec]) -> Dict[str, Any]:
    """Return the JSON schema object for ``field_specs``."""
    return build_model(field_specs).model_json_schema()


# -----------------------------
# Contract
# -----------------------------
class OutputContract:
    """Validates raw backend text against a fixed set of reply fields."""

    def __init__(
        self,
        field_specs: Mapping[str, FieldSpec],
        *,
        examples: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.field_specs = _normalize_specs(field_specs)
        self.model = build_model(self.field_specs, examples=examples)
        self.required = [n for n, s in self.field_specs.items() if s.required]

    @property
    def schema(self) -> Dict[str, Any]:
        return self.model.model_json_schema()

    def parse(self, raw: Any) -> Union[Delta, ParseError]:
        if not isinstance(raw, (str, bytes, bytearray)):
            return ParseError("malformed", f"expected text, got {type(raw).__name__}")
        try:
            reply = self.model.model_validate_json(raw)
        except ValidationError as exc:
            return self._classify(exc)

        data = reply.model_dump()
        for name in self.required:
            value = data.get(name)
            if isinstance(value, str) and not value.strip():
                return ParseError("missing-required-field", "blank value", field=name)

        # Delta fields stay verbatim; only the chat line is trimmed.
        response = data.pop(RESPONSE_FIELD).strip()
        return Delta(response=response, fields=data)

    def _classify(self, exc: ValidationError) -> ParseError:
        errors = exc.errors(include_url=False)
        for err in errors:
            loc = err.get("loc") or ()
            name = loc[0] if len(loc) == 1 else None
            if name in self.required and err.get("type") in {"missing", "string_too_short"}:
                return ParseError("missing-required-field", err.get("msg", ""), field=str(name))

        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc") or ()) or "<root>"
        return ParseError("malformed", f"{where}: {first.get('msg', str(exc))}")


def default_contract() -> OutputContract:
    """Reply contract used by the storyteller prompt."""
    return OutputContract(
        {
            RESPONSE_FIELD: FieldSpec(
                required=True,
                min_length=1,
                description="Conversational reply, questions and suggestions for the user.",
            ),
            "context": FieldSpec(
                description="New context facts, one per line. Empty unless explicitly requested.",
            ),
            "story": FieldSpec(
                description="New story narrative to append. Empty unless explicitly requested.",
            ),
        },
        examples=[
            {
                "response": "Here's your story",
                "context": "In a magical kingdom...",
                "story": "Once upon a time...",
            }
        ],
    )
