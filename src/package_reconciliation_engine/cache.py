from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

from typing_extensions import Self

from package_reconciliation_engine.internal.util.multiformat import MultiformatModelMixin


@dataclass(frozen=True, slots=True)
class ArtifactKey(MultiformatModelMixin):
    package: str
    content_hash: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "content_hash", self.content_hash.strip().lower())

    @property
    def identifier(self) -> str:
        return f"{self.package}@{self.content_hash}"

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"package": self.package, "content_hash": self.content_hash}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(package=mapping["package"], content_hash=mapping["content_hash"])


@dataclass(frozen=True, slots=True)
class ArtifactRecord(MultiformatModelMixin):
    key: ArtifactKey
    source: str
    created_at_epoch_s: float | None = None

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "key": self.key.to_mapping(),
            "source": self.source,
            "created_at_epoch_s": self.created_at_epoch_s,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            key=ArtifactKey.from_mapping(mapping["key"]),
            source=mapping["source"],
            created_at_epoch_s=mapping.get("created_at_epoch_s"),
        )


class ArtifactCache(ABC):
    """
    Index of content hashes known to be available locally. Hash keyed, so concurrent
    writers of the same key are harmless.
    """

    @abstractmethod
    def get(self, key: ArtifactKey) -> ArtifactRecord | None: ...

    @abstractmethod
    def put(self, record: ArtifactRecord) -> None: ...

    @abstractmethod
    def delete(self, key: ArtifactKey) -> None: ...

    def contains(self, key: ArtifactKey) -> bool:
        return self.get(key) is not None

    def close(self) -> None:
        """
        Cleanup hook for caches.

        The default implementation is a no-op. Override in caches that hold resources
        (file handles, connections, temp dirs, etc.).
        """
        return None
