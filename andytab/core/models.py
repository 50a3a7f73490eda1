"""Data models for the synchronized AndyTab dataset.

Field aliases match the camelCase keys the extension writes into snapshots,
so a model dumped with ``by_alias=True`` is wire-compatible with any existing
installation reading the same WebDAV directory.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Built-in search engines; these are always present and cannot be removed.
BUILTIN_SEARCH_ENGINES: dict[str, dict[str, str]] = {
    "google": {"name": "Google", "url": "https://www.google.com/search?q=%s"},
    "baidu": {"name": "百度", "url": "https://www.baidu.com/s?wd=%s"},
    "bing": {"name": "Bing", "url": "https://cn.bing.com/search?q=%s"},
    "duckduckgo": {"name": "DuckDuckGo", "url": "https://duckduckgo.com/?q=%s"},
}


class Shortcut(BaseModel):
    """A single new-tab shortcut tile.

    Unknown keys written by newer extension versions are kept as extras.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | int | None = None
    name: str = ""
    url: str
    icon_type: Literal["auto", "custom"] = Field(default="auto", alias="iconType")
    icon: str = ""
    custom_color: str | None = Field(default=None, alias="customColor")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    @field_validator("icon", mode="before")
    @classmethod
    def none_icon_to_empty(cls, v: str | None) -> str:
        return v or ""


class Todo(BaseModel):
    """A to-do item; ``id`` is usually the creation time in milliseconds."""

    model_config = ConfigDict(extra="allow")

    id: int
    text: str = ""
    completed: bool = False


class SearchEngine(BaseModel):
    """A search engine with a ``%s`` query placeholder in its URL template."""

    model_config = ConfigDict(extra="allow")

    name: str
    url: str

    @field_validator("url")
    @classmethod
    def validate_placeholder(cls, v: str) -> str:
        """Validate the query placeholder is present."""
        if "%s" not in v:
            raise ValueError("Search engine URL must contain a %s placeholder")
        return v


class WebDAVConfig(BaseModel):
    """Connection credentials as stored by the extension."""

    model_config = ConfigDict(extra="allow")

    url: str = ""
    username: str = ""
    password: str = ""


def default_search_engines() -> dict[str, SearchEngine]:
    return {key: SearchEngine(**engine) for key, engine in BUILTIN_SEARCH_ENGINES.items()}


class AppDataset(BaseModel):
    """The full synchronizable application state.

    Every field has a default so partially populated snapshots still decode
    into a complete dataset. ``model_fields_set`` records which categories
    were actually present, which the local store uses to decide what to
    overwrite when a snapshot is applied.
    """

    model_config = ConfigDict(populate_by_name=True)

    shortcuts: list[Shortcut] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    search_engines: dict[str, SearchEngine] = Field(
        default_factory=default_search_engines, alias="searchEngines"
    )
    todos: list[Todo] = Field(default_factory=list)
    notes: str = ""
    webdav_config: WebDAVConfig | None = Field(default=None, alias="webdavConfig")
    bookmarks: Any = None

    @field_validator("shortcuts", "todos", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("settings", mode="before")
    @classmethod
    def none_to_dict(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("notes", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("search_engines", mode="before")
    @classmethod
    def ensure_builtin_engines(cls, v: Any) -> Any:
        """Re-add any built-in engine missing from the mapping."""
        engines = dict(v or {})
        for key, engine in BUILTIN_SEARCH_ENGINES.items():
            engines.setdefault(key, dict(engine))
        return engines

    def to_wire(self) -> dict[str, Any]:
        """Dump every field (defaults included) using the wire key names."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "AppDataset":
        return cls.model_validate(data)


def remove_search_engine(engines: dict[str, SearchEngine], key: str) -> dict[str, SearchEngine]:
    """Return a copy of ``engines`` without ``key``.

    Raises:
        ValueError: If ``key`` names a built-in engine
    """
    if key in BUILTIN_SEARCH_ENGINES:
        raise ValueError(f"Built-in search engine '{key}' cannot be removed")
    return {k: v for k, v in engines.items() if k != key}


class SyncState(str, Enum):
    """States of the sync engine."""

    IDLE = "idle"
    CHECKING_ON_STARTUP = "checking_on_startup"
    AWAITING_CONFLICT_RESOLUTION = "awaiting_conflict_resolution"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"


class StartupAction(str, Enum):
    """Outcome of the startup check."""

    NONE = "none"
    DOWNLOADED = "downloaded"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    FAILED = "failed"


class Resolution(str, Enum):
    """Conflict resolutions offered to the user."""

    KEEP_LOCAL = "local"
    KEEP_REMOTE = "cloud"
    MERGE = "merge"
