from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from typing_extensions import Self

from package_reconciliation_engine.internal.util.toml import (
    dump_toml_to_str,
    load_toml_file,
    load_toml_text,
)


def _normalize(value: Any) -> Any:
    """
    Convert a value into plain JSON-compatible data with a stable ordering.
    """
    match value:
        case Path():
            return value.as_posix()
        case Enum():
            return value.value
        case Mapping():
            return {str(k): _normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
        case set() | frozenset():
            return sorted(_normalize(v) for v in value)
        case list() | tuple():
            return [_normalize(v) for v in value]
        case datetime() | date():
            return value.isoformat()
        case _:
            return value


def _sort_dict(value: Any) -> Any:
    # TOML has no null, so None entries are dropped on the way out.
    if isinstance(value, Mapping):
        return {k: _sort_dict(v) for k, v in sorted(value.items()) if v is not None}
    if isinstance(value, list):
        return [_sort_dict(v) for v in value]
    return value


class MultiformatSerializableMixin:
    """
    Serialization half of the multiformat model contract.

    Subclasses provide to_mapping(); json and toml text plus the flat one-line
    summary used by __str__ are derived from it.
    """

    def to_mapping(self, *args: Any, **kwargs: Any) -> Mapping[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} must implement to_mapping()")

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(_normalize(self.to_mapping()), indent=indent, sort_keys=True)

    def to_toml(self) -> str:
        return dump_toml_to_str(_sort_dict(_normalize(self.to_mapping())))

    def flat_summary(
        self,
        *,
        first_fields: tuple[str, ...] = (),
        last_fields: tuple[str, ...] = (),
        exclude: tuple[str, ...] = (),
        include_empty: bool = False,
        sep: str = ", ",
    ) -> str:
        mapping = self.to_mapping()
        all_keys = set(mapping.keys()) - set(exclude)
        first = [f for f in first_fields if f in all_keys]
        last = [f for f in last_fields if f in all_keys and f not in first]
        middle = sorted(all_keys - set(first) - set(last))

        items: list[str] = []
        for k in (*first, *middle, *last):
            v = mapping[k]
            if not include_empty and (
                v is None or v == "" or (isinstance(v, (list, tuple, set, dict)) and not v)
            ):
                continue
            if isinstance(v, (datetime, date)):
                items.append(f"{k}={v.isoformat()}")
            elif isinstance(v, dict):
                items.append(f"{k}={dict(v)}")
            elif isinstance(v, (list, tuple, set)):
                items.append(f"{k}={list(v)}")
            else:
                items.append(f"{k}={v}")
        return sep.join(items)

    def __str__(self) -> str:
        return self.flat_summary()


class MultiformatDeserializableMixin:
    """
    Deserialization half of the multiformat model contract.

    Subclasses provide from_mapping(); text and file loading are derived from it.
    """

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **kwargs: Any) -> Self:
        raise NotImplementedError(f"{cls.__name__} must implement from_mapping()")

    @classmethod
    def deserialize(cls, text: str, *, fmt: str = "json") -> Self:
        return cls.from_mapping(cls._coerce_root_mapping(cls._parse_text(text, fmt)))

    @classmethod
    def from_json(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="json")

    @classmethod
    def from_toml(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="toml")

    @classmethod
    def from_file(cls, path: str | Path, *, fmt: str | None = None) -> Self:
        path = Path(path)
        match fmt or cls._infer_format_from_suffix(path):
            case "toml":
                raw = load_toml_file(path)
            case other:
                raw = cls._parse_text(path.read_text(encoding="utf-8"), other)
        return cls.from_mapping(cls._coerce_root_mapping(raw))

    @staticmethod
    def _infer_format_from_suffix(path: Path) -> str:
        match path.suffix.lower():
            case ".json":
                return "json"
            case ".toml":
                return "toml"
            case _:
                raise ValueError(f"Cannot infer format from file suffix: {path.name!r}")

    @staticmethod
    def _parse_text(text: str, fmt: str) -> Any:
        match fmt:
            case "json":
                return json.loads(text)
            case "toml":
                return load_toml_text(text)
            case _:
                raise ValueError(f"Unrecognized serialization format: {fmt!r}")

    @staticmethod
    def _coerce_root_mapping(raw: Any) -> Mapping[str, Any]:
        if isinstance(raw, Mapping):
            return raw
        raise TypeError(f"Expected a mapping at the document root, got {type(raw).__name__}")


class MultiformatModelMixin(MultiformatSerializableMixin, MultiformatDeserializableMixin):
    pass
