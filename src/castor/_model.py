"""Pydantic base for provider wire payloads.

``WireModel.to_wire()`` produces the minimal JSON a provider expects:
fields still equal to their default are omitted unless listed in
``wire_required``, and nested values are compacted (``None`` and empty
collections dropped).
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError

from castor.errors import InvalidRequestError


def compact(value: Any) -> Any:
    """Recursively drop ``None`` values and empty collections from mappings.

    Inside lists, ``None`` entries are removed and mappings are compacted
    but kept even when they end up empty.
    """
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            item = compact(item)
            if item is None or (isinstance(item, (dict, list)) and not item):
                continue
            out[key] = item
        return out
    if isinstance(value, (list, tuple)):
        return [compact(item) for item in value if item is not None]
    return value


def dump(value: Any) -> Any:
    """Convert models (and containers of models) into plain JSON values."""
    if isinstance(value, WireModel):
        return value.to_wire()
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True, by_alias=True)
    if isinstance(value, dict):
        return {key: dump(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [dump(item) for item in value]
    return value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (dict, list)) and not value)


def invalid_request(exc: ValidationError, model: type[BaseModel]) -> InvalidRequestError:
    """Translate a pydantic ValidationError into InvalidRequestError."""
    errors = exc.errors(include_url=False)
    first = errors[0] if errors else {"loc": (), "msg": str(exc)}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    constraint = str(first.get("msg", ""))
    where = f"{model.__name__}.{field}" if field else model.__name__
    extra = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
    return InvalidRequestError(
        f"Invalid {where}: {constraint}{extra}",
        field=field,
        constraint=constraint,
    )


class _WireModelMeta(type(BaseModel)):
    # Only top-level construction goes through the metaclass; nested
    # validation keeps raising ValidationError so unions can fall through.
    def __call__(cls, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().__call__(*args, **kwargs)
        except ValidationError as exc:
            raise invalid_request(exc, cls) from exc


class WireModel(BaseModel, metaclass=_WireModelMeta):
    """Typed provider payload with minimal-JSON serialization."""

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        populate_by_name=True,
        protected_namespaces=(),
    )

    #: Fields emitted even when equal to their default (discriminators etc).
    wire_required: ClassVar[frozenset[str]] = frozenset()

    def __setattr__(self, name: str, value: Any) -> None:
        info = type(self).model_fields.get(name)
        # Re-assigning a frozen discriminator to the same value is a no-op.
        if info is not None and info.frozen and getattr(self, name, None) == value:
            return
        try:
            super().__setattr__(name, value)
        except ValidationError as exc:
            raise invalid_request(exc, type(self)) from exc

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the provider's minimal wire shape."""
        out: dict[str, Any] = {}
        for name, info in type(self).model_fields.items():
            value = getattr(self, name)
            key = info.serialization_alias or info.alias or name
            if name in self.wire_required:
                if value is not None:
                    out[key] = dump(value)
                continue
            if value is None:
                continue
            if not info.is_required() and value == info.get_default(
                call_default_factory=True
            ):
                continue
            dumped = compact(dump(value))
            if _is_empty(dumped):
                continue
            out[key] = dumped
        for key, value in (self.model_extra or {}).items():
            dumped = compact(dump(value))
            if not _is_empty(dumped):
                out[key] = dumped
        return out
