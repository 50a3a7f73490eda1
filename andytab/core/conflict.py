"""Cloud-biased merge used by the MERGE conflict resolution."""

from typing import Callable, Hashable, Iterable, TypeVar

from andytab.core.models import AppDataset

T = TypeVar("T")


def keyed_union(cloud: Iterable[T], local: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """
    Union two lists, deduplicated by ``key``.

    Cloud items come first in their original order, followed by local items
    whose key the cloud list does not contain. The first occurrence of a key
    wins, so cloud entries win every collision.
    """
    seen: set[Hashable] = set()
    merged: list[T] = []
    for item in [*cloud, *local]:
        item_key = key(item)
        if item_key in seen:
            continue
        seen.add(item_key)
        merged.append(item)
    return merged


def merge_datasets(local: AppDataset, cloud: AppDataset) -> AppDataset:
    """
    Merge a local and a cloud dataset, preferring cloud values.

    - shortcuts: keyed union by ``url``
    - todos: keyed union by ``id``
    - settings, searchEngines: shallow merge, cloud wins on key collision
    - notes: cloud if non-empty, else local
    - bookmarks: cloud tree replaces the local one (local kept if cloud has none)
    - webdavConfig: always the local connection
    """
    return AppDataset(
        shortcuts=keyed_union(cloud.shortcuts, local.shortcuts, key=lambda s: s.url),
        todos=keyed_union(cloud.todos, local.todos, key=lambda t: t.id),
        settings={**local.settings, **cloud.settings},
        search_engines={**local.search_engines, **cloud.search_engines},
        notes=cloud.notes or local.notes,
        bookmarks=cloud.bookmarks if cloud.bookmarks is not None else local.bookmarks,
        webdav_config=local.webdav_config,
    )
