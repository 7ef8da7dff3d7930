"""Policy store: loads the declarative admission rule set.

The policy is a JSON document listing the file types the gateway will accept
and the global keywords that must never appear in metadata or hidden-payload
scan output::

    {
      "allowed_files": [
        {
          "extension": ".png",
          "description": "PNG image data",
          "strings": ["IHDR"],
          "forbidden_contained_names": []
        }
      ],
      "forbidden_keywords": ["ELF", "Zip archive data"]
    }

``rules``, ``expected_content_descriptor``/``expectedContentDescriptor``,
``allowed_substrings``/``allowedSubstrings``, ``forbiddenContainedNames`` and
``forbiddenKeywords`` are accepted as aliases.  Unknown fields are ignored.

**Fail-closed contract**: any problem reading or validating the document
raises :class:`ConfigError`.  There is no built-in default policy, and a
cached policy is never served once the document on disk has become invalid,
so a broken rules file rejects every upload rather than admitting them.

:meth:`PolicyStore.load` re-reads the document on every call unless caching is
enabled, in which case the parsed policy is reused only while the file's
``(mtime_ns, size)`` is unchanged.  Either way, rule edits take effect without
restarting the service.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the policy document is unreadable or malformed.

    Callers must treat this as "no policy", which means reject everything.
    """


# ---------------------------------------------------------------------------
# Immutable runtime policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleEntry:
    """Per-extension admission rule.

    Attributes:
        expected_content_descriptor: Text that must appear (case-insensitively)
            in the content sniffer's description of the file.
        allowed_substrings: Markers of which at least one must appear in the
            file's extracted strings.  Empty means no marker is required.
        forbidden_contained_names: Extension-specific names that, like the
            global forbidden keywords, reject the file when they appear in
            metadata or hidden-payload scan output.
    """

    expected_content_descriptor: str
    allowed_substrings: tuple[str, ...] = ()
    forbidden_contained_names: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Policy:
    """Read-only rule set for a single admission run."""

    rules: Mapping[str, RuleEntry]
    forbidden_keywords: frozenset[str] = frozenset()

    def rule_for(self, extension: str) -> RuleEntry | None:
        """Return the rule for *extension*, or ``None`` when it is not allowed."""
        return self.rules.get(normalise_extension(extension))


def normalise_extension(extension: str) -> str:
    """Return *extension* trimmed, lowercased, and with a single leading dot."""
    ext = extension.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


# ---------------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------------


def _as_list(value: Any) -> Any:
    # A JSON ``null`` list is treated as empty, mirroring the rules files in use.
    return [] if value is None else value


def _reject_blank(values: list[str], field_name: str) -> list[str]:
    cleaned = [v.strip() for v in values]
    if any(not v for v in cleaned):
        raise ValueError(f"{field_name} must not contain blank entries")
    return cleaned


class RuleDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    extension: str
    expected_content_descriptor: str = Field(
        validation_alias=AliasChoices(
            "expected_content_descriptor", "expectedContentDescriptor", "description"
        )
    )
    allowed_substrings: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("allowed_substrings", "allowedSubstrings", "strings"),
    )
    forbidden_contained_names: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("forbidden_contained_names", "forbiddenContainedNames"),
    )

    @field_validator("extension")
    @classmethod
    def validate_extension(cls, v: str) -> str:
        ext = normalise_extension(v)
        if len(ext) < 2 or "/" in ext or "\\" in ext:
            raise ValueError(f"invalid extension {v!r}")
        return ext

    @field_validator("expected_content_descriptor")
    @classmethod
    def validate_descriptor(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content descriptor must not be blank")
        return v.strip()

    @field_validator("allowed_substrings", "forbidden_contained_names", mode="before")
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("allowed_substrings", "forbidden_contained_names")
    @classmethod
    def validate_entries(cls, v: list[str], info: Any) -> list[str]:
        return _reject_blank(v, info.field_name)


class PolicyDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rules: list[RuleDocument] = Field(
        validation_alias=AliasChoices("allowed_files", "rules")
    )
    forbidden_keywords: list[str] = Field(
        validation_alias=AliasChoices("forbidden_keywords", "forbiddenKeywords")
    )

    @field_validator("forbidden_keywords", mode="before")
    @classmethod
    def null_as_empty(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("forbidden_keywords")
    @classmethod
    def validate_keywords(cls, v: list[str]) -> list[str]:
        return _reject_blank(v, "forbidden_keywords")

    def to_policy(self) -> Policy:
        """Build the immutable :class:`Policy`.

        Raises:
            ConfigError: If two rules share an extension.
        """
        rules: dict[str, RuleEntry] = {}
        for doc in self.rules:
            if doc.extension in rules:
                raise ConfigError(f"duplicate rule for extension {doc.extension!r}")
            rules[doc.extension] = RuleEntry(
                expected_content_descriptor=doc.expected_content_descriptor,
                allowed_substrings=tuple(doc.allowed_substrings),
                forbidden_contained_names=frozenset(doc.forbidden_contained_names),
            )
        return Policy(
            rules=MappingProxyType(rules),
            forbidden_keywords=frozenset(self.forbidden_keywords),
        )


def parse_policy(data: Any) -> Policy:
    """Validate an already-decoded policy document.

    Raises:
        ConfigError: If *data* does not satisfy the document schema.
    """
    try:
        document = PolicyDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid policy document: {exc}") from exc
    return document.to_policy()


# ---------------------------------------------------------------------------
# PolicyStore
# ---------------------------------------------------------------------------


class PolicyStore:
    """Loads :class:`Policy` objects from a JSON document on disk.

    Args:
        path: Location of the policy document.
        cache: When ``True``, reuse the last parsed policy while the file's
            modification time and size are unchanged.  The file is still
            ``stat``-ed on every call.
    """

    def __init__(self, path: Path | str, *, cache: bool = False) -> None:
        self._path = Path(path)
        self._cache_enabled = cache
        self._lock = threading.Lock()
        self._cached: tuple[tuple[int, int], Policy] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Policy:
        """Read, validate, and return the current policy.

        Raises:
            ConfigError: If the document is missing, unreadable, not valid
                JSON, or fails schema validation.
        """
        try:
            stat = self._path.stat()
        except OSError as exc:
            raise ConfigError(f"cannot read policy document {self._path}: {exc}") from exc
        signature = (stat.st_mtime_ns, stat.st_size)

        if self._cache_enabled:
            with self._lock:
                if self._cached is not None and self._cached[0] == signature:
                    return self._cached[1]

        policy = self._read()

        if self._cache_enabled:
            with self._lock:
                self._cached = (signature, policy)
        return policy

    def invalidate(self) -> None:
        """Drop any cached policy so the next :meth:`load` re-reads the file."""
        with self._lock:
            self._cached = None

    def _read(self) -> Policy:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"cannot read policy document {self._path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"error parsing policy document {self._path}: {exc}") from exc

        try:
            policy = parse_policy(data)
        except ConfigError:
            # Drop a stale cache entry so a later fix is always re-read.
            self.invalidate()
            raise

        logger.debug(
            "Policy loaded path=%s extensions=%d forbidden_keywords=%d",
            self._path,
            len(policy.rules),
            len(policy.forbidden_keywords),
        )
        return policy
